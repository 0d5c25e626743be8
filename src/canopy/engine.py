"""Facade that wires keys, expansion, flattening, fetching and refreshing together."""

from __future__ import annotations

import itertools
from collections.abc import Hashable
from typing import Any, Callable, Iterable

from canopy.config.models import EngineSettings
from canopy.errors import FetchFailed, FetchTriple, UnboundedSubtree, UnsupportedOperation
from canopy.events import CollapseEvent, EngineEvent, EngineReset, ExpandEvent, Listener
from canopy.expansion import ExpansionModel
from canopy.fetch import FetchCoordinator
from canopy.flattener import FlatEntry, Flattener, RowNotLoaded
from canopy.keys import KeyMapper, KeyProvider, NotFound
from canopy.markers import NOT_VISIBLE, PENDING, ROOT
from canopy.refresh import RefreshCoordinator, RefreshResult
from canopy.runtime_logging import RuntimeLogger, get_runtime_logger
from canopy.sizes import Known, Size, Unknown, as_size
from canopy.sources.base import HierarchicalDataSource, ItemFilter, QueryOptions, SortKey

_engine_ids = itertools.count(1)


class _SourceWalker:
    """Enumerates children for recursive expand/collapse, refusing unbounded levels."""

    def __init__(self, fetcher: FetchCoordinator, child_limit: int) -> None:
        self._fetcher = fetcher
        self._child_limit = child_limit

    def identity(self, item: Any) -> Hashable:
        return self._fetcher.source.get_id(item)

    def has_children(self, item: Any) -> bool:
        return self._fetcher.source.has_children(item)

    async def children(self, item: Any) -> list[Any]:
        source = self._fetcher.source
        identity = self.identity(item)
        query = self._fetcher.base_query(item)
        try:
            size = as_size(await source.get_child_count(query))
        except Exception as exc:
            raise FetchFailed(FetchTriple(identity, 0, 0), exc) from exc
        match size:
            case Unknown():
                raise UnboundedSubtree(identity, "child count is unknown")
            case Known(count) if count > self._child_limit:
                raise UnboundedSubtree(
                    identity,
                    f"{count} children exceed the recursive limit of {self._child_limit}",
                )
        try:
            return list(await source.fetch_children(query.window(0, size.count)))
        except Exception as exc:
            raise FetchFailed(FetchTriple(identity, 0, size.count), exc) from exc


class TreeEngine:
    """Virtual flat view over a lazily loaded hierarchical data source.

    All mutation happens on the event loop that awaits the engine's
    coroutines. Fetches for different windows run concurrently; results are
    only applied while the level they were issued for is still attached.
    """

    def __init__(
        self,
        source: HierarchicalDataSource[Any],
        settings: EngineSettings | None = None,
        *,
        key_provider: KeyProvider | None = None,
        logger: RuntimeLogger | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._logger = (logger or get_runtime_logger()).bind(engine=f"engine-{next(_engine_ids)}")
        self._listeners: list[Listener] = []
        self.keys = KeyMapper(key_provider)
        self.expansion = ExpansionModel()
        self.flattener = Flattener(source, self.expansion, on_release=self.keys.remove)
        self.fetcher = FetchCoordinator(
            self.flattener,
            self.keys,
            self.expansion,
            self.settings,
            self._emit,
            logger=self._logger,
        )
        self.refresher = RefreshCoordinator(
            self.flattener,
            self.fetcher,
            self.keys,
            self._emit,
            find_item=self._find_moved,
            logger=self._logger,
        )
        self._logger.info(
            "engine.created",
            source=type(source).__name__,
            hierarchy_format=source.hierarchy_format,
        )

    @property
    def source(self) -> HierarchicalDataSource[Any]:
        return self.flattener.source

    # ------------------------------------------------------------------ #
    # listeners
    # ------------------------------------------------------------------ #

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: EngineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                self._logger.error("listener.failed", event=type(event).__name__, error=str(exc))

    # ------------------------------------------------------------------ #
    # reading
    # ------------------------------------------------------------------ #

    def resolve(self, flat_index: int) -> Any:
        """Item at ``flat_index``, or ``PENDING`` while its row is not loaded."""
        if flat_index < 0:
            raise IndexError(f"flat index {flat_index} is negative")
        if self.flattener.root is None:
            return PENDING
        located = self.flattener.locate(flat_index)
        if located is None:
            raise IndexError(f"flat index {flat_index} is out of range ({self.total_size()!r})")
        level, local = located
        row = level.rows.get(local)
        return PENDING if row is None else row.item

    def flatten(self, start: int, end: int) -> list[FlatEntry]:
        return self.flattener.flatten(start, end)

    def total_size(self) -> Size:
        """Flat row count, ``UNKNOWN`` before the root count is fetched."""
        return self.flattener.total_size()

    def size_of(self, parent: Hashable = ROOT) -> Size:
        return self.flattener.size_of(parent)

    async def ensure_loaded(self, start: int, end: int) -> None:
        await self.fetcher.ensure_loaded(start, end)

    async def request_viewport(self, first: int, size: int) -> tuple[int, int]:
        window = await self.fetcher.request_viewport(first, size)
        self.refresher.settle()
        return window

    # ------------------------------------------------------------------ #
    # expansion
    # ------------------------------------------------------------------ #

    def is_expanded(self, identity: Hashable) -> bool:
        return self.expansion.is_expanded(identity)

    async def expand(self, identity: Hashable) -> bool:
        """Expand ``identity``; leaves are ignored. Returns True when state changed."""
        row = self.flattener.row_of(identity)
        if row is not None and not self.source.has_children(row.item):
            self._logger.debug("expansion.leaf_ignored", identity=identity)
            return False
        if not self.expansion.expand(identity):
            return False
        self._emit(ExpandEvent((identity,)))
        self._logger.info("expansion.expanded", identity=identity)
        if self.flattener.flattened_source:
            self._invalidate_flattened()
        else:
            await self.fetcher.attach_identity(identity)
        self._check()
        return True

    async def collapse(self, identity: Hashable) -> bool:
        if not self.expansion.collapse(identity):
            return False
        self._drop_children([identity])
        self._emit(CollapseEvent((identity,)))
        self._logger.info("expansion.collapsed", identity=identity)
        self._check()
        return True

    async def expand_recursively(self, roots: Iterable[Any], max_depth: int | None) -> list[Hashable]:
        """Expand ``roots`` and their descendants up to ``max_depth`` levels down.

        ``roots`` are items; identities of cached rows are accepted too.
        ``max_depth=0`` expands just the roots and ``None`` walks the whole
        subtree. A walk that meets a level of unknown or excessive size raises
        ``UnboundedSubtree`` and changes nothing.
        """
        items = [self._item_for(root) for root in roots]
        changed = await self.expansion.expand_recursively(items, max_depth, self._walker())
        if not changed:
            return changed
        self._emit(ExpandEvent(tuple(changed), recursive=True))
        self._logger.info("expansion.expanded_recursively", count=len(changed), max_depth=max_depth)
        if self.flattener.flattened_source:
            self._invalidate_flattened()
        else:
            await self.fetcher.attach_loaded_expanded()
        self._check()
        return changed

    async def collapse_recursively(self, roots: Iterable[Any], max_depth: int | None) -> list[Hashable]:
        items = [self._item_for(root) for root in roots]
        changed = await self.expansion.collapse_recursively(items, max_depth, self._walker())
        if not changed:
            return changed
        self._drop_children(changed)
        self._emit(CollapseEvent(tuple(changed), recursive=True))
        self._logger.info("expansion.collapsed_recursively", count=len(changed), max_depth=max_depth)
        self._check()
        return changed

    # ------------------------------------------------------------------ #
    # refreshing
    # ------------------------------------------------------------------ #

    async def refresh_item(self, identity: Hashable, recursive: bool = False, *, item: Any = None) -> bool:
        """Invalidate one item and reload the current viewport if there is one."""
        found = self.refresher.refresh_item(identity, recursive=recursive, item=item)
        if self.fetcher.viewport is not None:
            await self.request_viewport(*self.fetcher.viewport)
        return found

    async def refresh_all(self) -> RefreshResult:
        return await self.refresher.refresh_all()

    async def set_query_options(
        self,
        *,
        sort_key: SortKey | None = None,
        reverse: bool = False,
        filter: ItemFilter | None = None,
    ) -> RefreshResult:
        self.fetcher.options = QueryOptions(sort_key=sort_key, reverse=reverse, filter=filter)
        return await self.refresh_all()

    def set_data_source(self, source: HierarchicalDataSource[Any]) -> None:
        """Swap the source, forgetting keys, expansion state and caches."""
        self.fetcher.cancel_all()
        self.flattener.reset(release_keys=False)
        self.flattener.source = source
        self.flattener.generation += 1
        self.keys.reset()
        self.expansion.clear()
        self.fetcher.viewport = None
        self.refresher.verification_pending = False
        self._emit(EngineReset("source"))
        self._logger.info("engine.source_changed", source=type(source).__name__)

    # ------------------------------------------------------------------ #
    # keys and positions
    # ------------------------------------------------------------------ #

    def key_of(self, identity: Hashable) -> str:
        """Key of a fetched (or pinned) identity; ``KeyError`` for one never seen."""
        row = self.flattener.row_of(identity)
        if row is not None:
            return self.keys.key(identity, row.item)
        key = self.keys.key_if_known(identity)
        if key is None:
            raise KeyError(identity)
        return key

    def identity_of(self, key: str) -> Hashable | NotFound:
        return self.keys.get(key)

    def item_of(self, key: str) -> Any:
        """Cached item for ``key``; ``NotFound`` if the key or its row is gone."""
        identity = self.keys.get(key)
        if isinstance(identity, NotFound):
            return identity
        row = self.flattener.row_of(identity)
        return NotFound(key) if row is None else row.item

    def pin(self, key: str) -> bool:
        return self.keys.pin(key)

    def unpin(self, key: str) -> None:
        self.keys.unpin(key)

    def scroll_anchor(self, identity: Hashable) -> int | Any:
        position = self.flattener.flat_index_of(identity)
        return NOT_VISIBLE if position is None else position

    def parent_of(self, identity: Hashable) -> Hashable | None:
        row = self.flattener.row_of(identity)
        if row is None:
            return None
        if self.flattener.flattened_source:
            return self.flattener.flatten_meta(row.item)[1]
        level, _ = self.flattener.context_of(identity)  # type: ignore[misc]
        return level.parent_identity

    def depth_of(self, identity: Hashable) -> int:
        row = self.flattener.row_of(identity)
        if row is None:
            return -1
        if self.flattener.flattened_source:
            return self.flattener.flatten_meta(row.item)[0]
        level, _ = self.flattener.context_of(identity)  # type: ignore[misc]
        return level.depth

    async def index_of_path(self, path: Iterable[int]) -> int:
        """Flat index of the row addressed by per-level child indices.

        Rows along the path are fetched as needed; every ancestor on the
        path must already be expanded.
        """
        path = tuple(path)
        if self.flattener.flattened_source and len(path) > 1:
            raise UnsupportedOperation("path addressing below the root needs a nested source")
        await self.fetcher.ensure_root()
        attempts = len(path) + self.settings.fetch.max_rounds
        for _ in range(attempts):
            try:
                return self.flattener.flat_index_of_path(path)
            except RowNotLoaded as missing:
                if not missing.needs_attach:
                    await self.fetcher.load_local(missing.level, missing.local)
                    continue
                identity = missing.level.rows[missing.local].identity
                if not await self.fetcher.attach_identity(identity):
                    raise IndexError(f"{identity!r} on path {path} has no children") from None
        raise LookupError(f"could not load the rows along path {path}")

    async def scroll_to_item(self, item: Any) -> int:
        """Expand the ancestors of ``item`` and return its flat index."""
        source = self.source
        ancestors: list[Any] = []
        path: list[int] = []
        current = item
        while current is not None:
            parent = source.get_parent(current)
            path.append(source.get_item_index(current, self.fetcher.base_query(parent)))
            if parent is not None:
                ancestors.append(parent)
            current = parent

        for ancestor in reversed(ancestors):
            await self.expand(source.get_id(ancestor))

        if self.flattener.flattened_source:
            return source.get_item_index(item, self.fetcher.base_query(None))
        return await self.index_of_path(reversed(path))

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #

    def check_invariants(self) -> None:
        self.flattener.check_invariants()

    def close(self) -> None:
        self.fetcher.cancel_all()
        self._listeners.clear()
        self._logger.info("engine.closed")

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #

    async def _find_moved(self, item: Any) -> int | None:
        """Flat index of ``item`` located through the source, without expanding anything."""
        source = self.source
        path: list[int] = []
        current = item
        try:
            while current is not None:
                parent = source.get_parent(current)
                if parent is not None and not self.is_expanded(source.get_id(parent)):
                    return None
                path.append(source.get_item_index(current, self.fetcher.base_query(parent)))
                current = parent
            if self.flattener.flattened_source:
                return source.get_item_index(item, self.fetcher.base_query(None))
            return await self.index_of_path(reversed(path))
        except (UnsupportedOperation, UnboundedSubtree, LookupError, ValueError) as exc:
            self._logger.debug("refresh.anchor_lookup_failed", error=str(exc))
            return None

    def _walker(self) -> _SourceWalker:
        return _SourceWalker(self.fetcher, self.settings.expansion.recursive_child_limit)

    def _item_for(self, root: Any) -> Any:
        if isinstance(root, Hashable):
            row = self.flattener.row_of(root)
            if row is not None:
                return row.item
        return root

    def _drop_children(self, identities: Iterable[Hashable]) -> None:
        if self.flattener.flattened_source:
            self._invalidate_flattened()
            return
        for identity in identities:
            level = self.flattener.level_for(identity)
            if level is not None:
                self.flattener.detach(level, release_keys=True)

    def _invalidate_flattened(self) -> None:
        if self.flattener.root is not None:
            self.flattener.mark_level_stale(self.flattener.root)

    def _check(self) -> None:
        if self.settings.strict:
            self.flattener.check_invariants()
