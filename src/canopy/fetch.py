"""Windowed, deduplicated child fetching for the flattened view."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Hashable

from canopy.config.models import EngineSettings
from canopy.errors import FetchFailed, FetchTriple, IdentityCollision, StaleParentFetch
from canopy.events import CollapseEvent, EngineEvent, RowsLoaded, SizeChanged
from canopy.expansion import ExpansionModel
from canopy.flattener import FetchWindow, Flattener, LevelCache, Row
from canopy.keys import KeyMapper
from canopy.markers import ROOT
from canopy.runtime_logging import RuntimeLogger, get_runtime_logger
from canopy.sizes import Known, Size, Unknown, as_size
from canopy.sources.base import HierarchicalDataSource, HierarchicalQuery, QueryOptions

Emit = Callable[[EngineEvent], None]


@dataclass(slots=True)
class FetchRequest:
    level: LevelCache
    offset: int
    limit: int

    @property
    def end(self) -> int:
        return self.offset + self.limit

    @property
    def triple(self) -> FetchTriple:
        return FetchTriple(self.level.parent_identity, self.offset, self.limit)


@dataclass(slots=True)
class _InFlight:
    request: FetchRequest
    seq: int
    task: asyncio.Task[None]


class FetchCoordinator:
    """Turn visible ranges into the smallest set of source windows.

    Requests for the same ``(parent, offset, limit)`` share one task, a range
    already covered by an in-flight window waits on that window, and every
    result is applied only if its level is still attached and no refresh
    happened since it was issued.
    """

    def __init__(
        self,
        flattener: Flattener,
        keys: KeyMapper,
        expansion: ExpansionModel,
        settings: EngineSettings,
        emit: Emit,
        *,
        logger: RuntimeLogger | None = None,
    ) -> None:
        self.flattener = flattener
        self.keys = keys
        self.expansion = expansion
        self.settings = settings
        self.options = QueryOptions()
        self.viewport: tuple[int, int] | None = None
        self._emit = emit
        self._logger = logger or get_runtime_logger()
        self._in_flight: dict[FetchTriple, _InFlight] = {}
        self._counts: dict[Hashable, tuple[int, asyncio.Task[Size]]] = {}

    @property
    def source(self) -> HierarchicalDataSource[Any]:
        return self.flattener.source

    def in_flight(self) -> list[FetchTriple]:
        return list(self._in_flight)

    def base_query(self, parent_item: Any) -> HierarchicalQuery[Any]:
        expanded = self.expansion.snapshot() if self.flattener.flattened_source else frozenset()
        return HierarchicalQuery(parent=parent_item, options=self.options, expanded=expanded)

    # ------------------------------------------------------------------ #
    # public entry points
    # ------------------------------------------------------------------ #

    async def ensure_loaded(self, start: int, end: int) -> None:
        """Fetch until every flat index in ``[start, end)`` is backed by a fresh row."""
        start = max(start, 0)
        if end <= start:
            return
        rounds = self.settings.fetch.max_rounds
        for _ in range(rounds):
            await self.ensure_root()
            await self._refresh_stale_counts()
            await self._attach_expanded(start, end)
            requests = self.plan(start, end)
            if not requests:
                break
            results = await asyncio.gather(
                *(self._fetch(request) for request in requests),
                return_exceptions=True,
            )
            failures = [result for result in results if isinstance(result, BaseException)]
            if failures:
                for extra in failures[1:]:
                    self._logger.error("fetch.additional_failure", error=str(extra))
                raise failures[0]
        else:
            self._logger.warning("fetch.rounds_exhausted", start=start, end=end, rounds=rounds)
        self._evict()

    async def request_viewport(self, first: int, size: int) -> tuple[int, int]:
        """Load the window around a viewport and return the range requested."""
        first = max(first, 0)
        size = max(size, 0)
        self.viewport = (first, size)
        fetch = self.settings.fetch
        page = fetch.page_size
        root = self.flattener.root
        if first == 0 and (root is None or not root.rows):
            # first page first, then a viewport-sized buffer behind it
            await self.ensure_loaded(0, page)
            await self.ensure_loaded(page, page + size)
            return 0, page + size
        start = max(0, first - fetch.viewport_pages_before * page)
        end = first + size + fetch.viewport_pages_after * page
        await self.ensure_loaded(start, end)
        return start, end

    async def ensure_root(self) -> None:
        while self.flattener.root is None:
            generation = self.flattener.generation
            size, _ = await self._count(ROOT, None)
            if self.flattener.root is None and generation == self.flattener.generation:
                self.flattener.create_root(size)
                self._logger.debug("fetch.root_created", size=repr(size))
                self._emit(SizeChanged(ROOT, size))

    async def load_local(self, level: LevelCache, local: int) -> None:
        """Fetch the page holding child ``local`` of ``level``."""
        page = self.settings.fetch.page_size
        offset = local - local % page
        limit = page
        if isinstance(level.size, Known):
            limit = max(min(page, level.size.count - offset), 1)
        elif level.end_bound is not None:
            limit = max(min(page, level.end_bound - offset), 1)
        await self._fetch(FetchRequest(level, offset, limit))

    async def attach_identity(self, identity: Hashable) -> bool:
        context = self.flattener.context_of(identity)
        if context is None:
            return False
        level, local = context
        return await self._attach_all(self._attach_candidates([(level, local)]))

    async def attach_loaded_expanded(self) -> bool:
        """Attach sub-caches for every cached row that is expanded but has none."""
        if self.flattener.flattened_source:
            return False
        slots = [(level, local) for level in self.flattener.levels() for local in list(level.rows)]
        return await self._attach_all(self._attach_candidates(slots))

    def plan(self, start: int, end: int) -> list[FetchRequest]:
        """Group the missing or stale rows of ``[start, end)`` into contiguous windows."""
        if self.flattener.root is None:
            return []
        now = time.monotonic()
        requests: list[FetchRequest] = []
        open_requests: dict[int, FetchRequest] = {}
        for flat_index in range(max(start, 0), end):
            located = self.flattener.locate(flat_index)
            if located is None:
                requests.extend(self._end_search_windows({id(request.level) for request in requests}))
                break
            level, local = located
            if not self._needs_fetch(level, local, now):
                open_requests.pop(id(level), None)
                continue
            request = open_requests.get(id(level))
            if request is not None and request.end == local:
                request.limit += 1
                continue
            request = FetchRequest(level, local, 1)
            requests.append(request)
            open_requests[id(level)] = request
        if self.source.is_in_memory():
            requests = self._widen_in_memory(requests, now)
        return requests

    def discard_in_flight(self) -> None:
        """Stop deduplicating against work issued before a reset."""
        self._in_flight.clear()
        self._counts.clear()

    def cancel_all(self) -> None:
        for entry in list(self._in_flight.values()):
            entry.task.cancel()
        for _, task in list(self._counts.values()):
            task.cancel()
        self.discard_in_flight()

    # ------------------------------------------------------------------ #
    # counts and sub-caches
    # ------------------------------------------------------------------ #

    async def _count(self, identity: Hashable, item: Any) -> tuple[Size, int]:
        pending = self._counts.get(identity)
        if pending is None:
            seq = self.flattener.next_seq()
            task = asyncio.create_task(self._run_count(identity, item), name=f"canopy-count-{seq}")
            pending = (seq, task)
            self._counts[identity] = pending
            task.add_done_callback(partial(self._forget_count, identity, pending))
        seq, task = pending
        return await asyncio.shield(task), seq

    async def _run_count(self, identity: Hashable, item: Any) -> Size:
        try:
            value = await self.source.get_child_count(self.base_query(item))
        except Exception as exc:
            self._logger.error("fetch.count_failed", parent=identity, error=str(exc))
            raise FetchFailed(FetchTriple(identity, 0, 0), exc) from exc
        return as_size(value)

    def _forget_count(self, identity: Hashable, pending: tuple[int, asyncio.Task[Size]], _task: asyncio.Task[Size]) -> None:
        if self._counts.get(identity) is pending:
            del self._counts[identity]

    async def _refresh_stale_counts(self) -> bool:
        levels = [level for level in self.flattener.levels() if level.count_stale]
        if not levels:
            return False
        results = await asyncio.gather(
            *(self._count(level.parent_identity, level.parent_item) for level in levels)
        )
        changed = False
        for level, (size, seq) in zip(levels, results):
            if level.detached or seq <= level.floor_seq:
                continue
            self._apply_size(level, size)
            changed = True
        return changed

    async def _attach_expanded(self, start: int, end: int) -> bool:
        if self.flattener.flattened_source:
            return False
        slots: list[tuple[LevelCache, int]] = []
        for flat_index in range(start, end):
            located = self.flattener.locate(flat_index)
            if located is None:
                break
            slots.append(located)
        return await self._attach_all(self._attach_candidates(slots))

    def _attach_candidates(self, slots: list[tuple[LevelCache, int]]) -> list[tuple[LevelCache, int, Row]]:
        candidates: list[tuple[LevelCache, int, Row]] = []
        for level, local in slots:
            row = level.rows.get(local)
            if row is None or level.subcache_at(local) is not None:
                continue
            if not self.expansion.is_expanded(row.identity) or not self.source.has_children(row.item):
                continue
            candidates.append((level, local, row))
        return candidates

    async def _attach_all(self, candidates: list[tuple[LevelCache, int, Row]]) -> bool:
        if not candidates:
            return False
        sizes = await asyncio.gather(*(self._count(row.identity, row.item) for _, _, row in candidates))
        attached = False
        for (level, local, row), (size, _) in zip(candidates, sizes):
            if level.detached or level.rows.get(local) is not row or level.subcache_at(local) is not None:
                continue
            if not self.expansion.is_expanded(row.identity):
                continue
            cache = self.flattener.attach(level, local, size)
            attached = True
            self._logger.debug("fetch.level_attached", parent=row.identity, size=repr(size))
            self._emit(SizeChanged(row.identity, size))
            if size == Known(0):
                self._handle_empty(cache)
        if attached and self.settings.strict:
            self.flattener.check_invariants()
        return attached

    def _apply_size(self, level: LevelCache, size: Size) -> None:
        previous = level.size
        self.flattener.set_size(level, size)
        if previous != size:
            self._logger.debug("fetch.size_changed", parent=level.parent_identity, old=repr(previous), new=repr(size))
            self._emit(SizeChanged(level.parent_identity, size))
        if level.parent_level is not None and size == Known(0):
            self._handle_empty(level)

    def _handle_empty(self, level: LevelCache) -> None:
        if self.settings.expansion.empty_expanded_policy != "collapse":
            return
        identity = level.parent_identity
        self.expansion.collapse(identity)
        self.flattener.detach(level, release_keys=True)
        self._logger.info("expansion.auto_collapsed", identity=identity)
        self._emit(CollapseEvent((identity,), automatic=True))

    # ------------------------------------------------------------------ #
    # row windows
    # ------------------------------------------------------------------ #

    def _needs_fetch(self, level: LevelCache, local: int, now: float) -> bool:
        row = level.rows.get(local)
        if row is None or row.stale:
            return True
        ttl = self.settings.fetch.row_ttl_s
        return ttl is not None and now - row.fetched_at > ttl

    def _widen_in_memory(self, requests: list[FetchRequest], now: float) -> list[FetchRequest]:
        limit = self.settings.cache.max_cached_rows
        widened: list[FetchRequest] = []
        by_level: dict[int, FetchRequest] = {}
        for request in requests:
            level = request.level
            if not isinstance(level.size, Known) or level.size.count > limit:
                widened.append(request)
                continue
            if id(level) in by_level:
                continue
            missing = [local for local in range(level.size.count) if self._needs_fetch(level, local, now)]
            whole = FetchRequest(level, missing[0], missing[-1] - missing[0] + 1)
            by_level[id(level)] = whole
            widened.append(whole)
        return widened

    async def _fetch(self, request: FetchRequest) -> None:
        level = request.level
        for entry in list(self._in_flight.values()):
            issued = entry.request
            if issued.level is level and issued.offset <= request.offset and request.end <= issued.end:
                self._logger.debug("fetch.joined", parent=level.parent_identity, offset=request.offset, limit=request.limit)
                await asyncio.shield(entry.task)
                return

        triple = request.triple
        seq = self.flattener.next_seq()
        query = self.base_query(level.parent_item).window(request.offset, request.limit)
        task = asyncio.create_task(self._run(request, seq, query), name=f"canopy-fetch-{seq}")
        entry = _InFlight(request, seq, task)
        self._in_flight[triple] = entry
        task.add_done_callback(partial(self._forget, triple, entry))
        self._logger.debug(
            "fetch.issued",
            parent=level.parent_identity,
            offset=request.offset,
            limit=request.limit,
            seq=seq,
        )
        await asyncio.shield(task)

    def _forget(self, triple: FetchTriple, entry: _InFlight, _task: asyncio.Task[None]) -> None:
        if self._in_flight.get(triple) is entry:
            del self._in_flight[triple]

    async def _run(self, request: FetchRequest, seq: int, query: HierarchicalQuery[Any]) -> None:
        try:
            items = list(await self.source.fetch_children(query))
        except Exception as exc:
            self._logger.error(
                "fetch.failed",
                parent=request.level.parent_identity,
                offset=request.offset,
                limit=request.limit,
                error=str(exc),
            )
            raise FetchFailed(request.triple, exc) from exc
        self._apply(request, seq, items)

    def _apply(self, request: FetchRequest, seq: int, items: list[Any]) -> None:
        level = request.level
        if level.detached or seq <= level.floor_seq:
            stale = StaleParentFetch(level.parent_identity)
            self._logger.debug("fetch.stale_discarded", seq=seq, reason=str(stale))
            return

        items = items[: request.limit]
        now = time.monotonic()
        generation = self.flattener.generation
        rows = [
            Row(
                identity=self.source.get_id(item),
                item=item,
                seq=seq,
                generation=generation,
                fetched_at=now,
            )
            for item in items
        ]
        try:
            writes = self.flattener.plan_store(level, request.offset, rows)
            self._assign_keys(writes)
        except IdentityCollision as exc:
            self._logger.error("fetch.identity_collision", identity=exc.identity, detail=exc.detail)
            raise

        self.flattener.commit_store(level, writes)
        level.last_window = FetchWindow(request.offset, request.limit, seq, now)

        received_end = request.offset + len(items)
        match level.size:
            case Unknown():
                self._settle_unknown_end(level, request, len(items))
            case Known(count) if len(items) < request.limit and count > received_end:
                self._logger.warning(
                    "fetch.short_page",
                    parent=level.parent_identity,
                    expected=count,
                    received_end=received_end,
                )
                self._apply_size(level, Known(received_end))

        self._emit(RowsLoaded(level.parent_identity, request.offset, len(writes)))
        if self.settings.strict:
            self.flattener.check_invariants()

    def _settle_unknown_end(self, level: LevelCache, request: FetchRequest, received: int) -> None:
        """Narrow down where an unknown-size level ends after one of its windows came back.

        An empty window only proves the level is no longer than its offset,
        unless the row just before it is cached.
        """
        received_end = request.offset + received
        bound = level.end_bound
        if received == 0 and request.offset > 0 and request.offset - 1 not in level.rows:
            self.flattener.bound_size(level, request.offset)
            self._logger.debug("fetch.end_bounded", parent=level.parent_identity, bound=level.end_bound)
        elif received < request.limit:
            self._apply_size(level, Known(received_end))
        elif bound is not None and received_end == bound:
            self._apply_size(level, Known(bound))
        elif bound is not None and received_end > bound:
            self.flattener.bound_size(level, None)

    def _end_search_windows(self, planned: set[int]) -> list[FetchRequest]:
        """Windows that halve the gap between the last cached row and the cap of a capped level."""
        page = self.settings.fetch.page_size
        windows: list[FetchRequest] = []
        for level in self.flattener.levels():
            bound = level.end_bound
            if bound is None or not isinstance(level.size, Unknown) or id(level) in planned:
                continue
            low = max(level.rows, default=-1) + 1
            offset = low if bound - low <= page else (low + bound) // 2
            windows.append(FetchRequest(level, offset, max(min(page, bound - offset), 1)))
        return windows

    def _assign_keys(self, writes: list[tuple[int, Row]]) -> None:
        fresh = [row.identity for _, row in writes if row.identity not in self.keys]
        try:
            for _, row in writes:
                self.keys.key(row.identity, row.item)
        except IdentityCollision:
            for identity in fresh:
                self.keys.remove(identity)
            raise

    def _evict(self) -> None:
        excess = self.flattener.row_count() - self.settings.cache.max_cached_rows
        if excess <= 0:
            return
        first, size = self.viewport or (0, 0)
        last = first + max(size, 1) - 1

        def distance(position: int | None) -> float:
            if position is None:
                return math.inf
            if first <= position <= last:
                return 0
            return min(abs(position - first), abs(position - last))

        ranked = sorted(self.flattener.positioned_rows(), key=lambda slot: distance(slot[0]), reverse=True)
        evicted = 0
        for position, level, local in ranked:
            if evicted >= excess or distance(position) == 0:
                break
            self.flattener.evict_row(level, local)
            evicted += 1
        self._logger.debug("cache.evicted", count=evicted, remaining=self.flattener.row_count())
