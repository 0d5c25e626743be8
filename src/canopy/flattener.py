"""Flat index mapping over the expanded part of a lazily loaded tree.

Every expanded parent whose row has been loaded owns a ``LevelCache``: a
sparse map of local child index to fetched ``Row`` plus the sub-caches of its
own expanded children, kept sorted by local index. The flat size of a level
is its child count plus the flat sizes of its sub-caches, memoized and
invalidated upwards whenever a count or a sub-cache changes.

A sub-cache whose size is ``UNKNOWN`` has an unknown flat size as well; every
flat index after its start resolves into it until the count becomes known.
"""

from __future__ import annotations

import bisect
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterator

from canopy.errors import (
    IdentityCollision,
    InvariantViolation,
    NotExpanded,
    UnboundedSubtree,
    UnsupportedOperation,
)
from canopy.expansion import ExpansionModel
from canopy.markers import PENDING, ROOT
from canopy.sizes import UNKNOWN, Known, Size, Unknown, add_sizes
from canopy.sources.base import HierarchicalDataSource

ReleaseCallback = Callable[[Hashable], None]


@dataclass(slots=True)
class Row:
    identity: Hashable
    item: Any
    seq: int
    generation: int
    fetched_at: float
    stale: bool = False
    floor_seq: int = -1


@dataclass(frozen=True, slots=True)
class FetchWindow:
    offset: int
    limit: int
    seq: int
    fetched_at: float


@dataclass(frozen=True, slots=True)
class FlatEntry:
    flat_index: int
    identity: Hashable | None
    item: Any
    depth: int
    parent: Hashable
    stale: bool = False

    @property
    def loaded(self) -> bool:
        return self.item is not PENDING


class RowNotLoaded(LookupError):
    """A path component needs a row (or its sub-cache) that is not cached yet."""

    def __init__(self, level: "LevelCache", local: int, *, needs_attach: bool = False) -> None:
        self.level = level
        self.local = local
        self.needs_attach = needs_attach
        super().__init__(f"row {local} under {level.parent_identity!r} is not loaded")


class LevelCache:
    def __init__(
        self,
        *,
        parent_level: "LevelCache | None",
        parent_index: int,
        parent_identity: Hashable,
        parent_item: Any,
        size: Size,
        depth: int,
    ) -> None:
        self.parent_level = parent_level
        self.parent_index = parent_index
        self.parent_identity = parent_identity
        self.parent_item = parent_item
        self.size = size
        self.depth = depth
        # an unknown-size level holds at most this many children
        self.end_bound: int | None = None
        self.rows: dict[int, Row] = {}
        self.count_stale = False
        self.floor_seq = -1
        self.detached = False
        self.last_window: FetchWindow | None = None
        self._sub_indices: list[int] = []
        self._subcaches: dict[int, LevelCache] = {}
        self._flat_size: Size | None = None

    def __repr__(self) -> str:
        return (
            f"LevelCache(parent={self.parent_identity!r}, size={self.size!r}, "
            f"rows={len(self.rows)}, subcaches={len(self._sub_indices)})"
        )

    @property
    def flat_size(self) -> Size:
        if self._flat_size is None:
            self._flat_size = add_sizes(
                itertools.chain((self.size,), (self._subcaches[i].flat_size for i in self._sub_indices))
            )
        return self._flat_size

    def subcaches(self) -> Iterator[tuple[int, "LevelCache"]]:
        for index in self._sub_indices:
            yield index, self._subcaches[index]

    def subcache_at(self, index: int) -> "LevelCache | None":
        return self._subcaches.get(index)

    def in_range(self, index: int) -> bool:
        if index < 0:
            return False
        if isinstance(self.size, Unknown):
            return self.end_bound is None or index < self.end_bound
        return index < self.size.count

    def local_offset(self, local: int) -> int | None:
        """Flat distance from this level's first child to child ``local``."""
        offset = local
        stop = bisect.bisect_left(self._sub_indices, local)
        for index in self._sub_indices[:stop]:
            size = self._subcaches[index].flat_size
            if isinstance(size, Unknown):
                return None
            offset += size.count
        return offset

    def invalidate_flat(self) -> None:
        level: LevelCache | None = self
        while level is not None:
            level._flat_size = None
            level = level.parent_level

    def _add_subcache(self, index: int, cache: "LevelCache") -> None:
        bisect.insort(self._sub_indices, index)
        self._subcaches[index] = cache
        self.invalidate_flat()

    def _drop_subcache(self, index: int) -> "LevelCache | None":
        cache = self._subcaches.pop(index, None)
        if cache is not None:
            self._sub_indices.remove(index)
            self.invalidate_flat()
        return cache


class Flattener:
    """Resolve flat indices against the cached, expanded part of the tree."""

    def __init__(
        self,
        source: HierarchicalDataSource[Any],
        expansion: ExpansionModel,
        on_release: ReleaseCallback | None = None,
    ) -> None:
        self.source = source
        self.expansion = expansion
        self.on_release = on_release
        self.root: LevelCache | None = None
        self.generation = 0
        self._seq = itertools.count()
        self._last_seq = -1
        self._contexts: dict[Hashable, tuple[LevelCache, int]] = {}
        self._levels: dict[Hashable, LevelCache] = {}

    # ------------------------------------------------------------------ #
    # structure
    # ------------------------------------------------------------------ #

    @property
    def flattened_source(self) -> bool:
        return self.source.hierarchy_format == "flattened"

    def next_seq(self) -> int:
        self._last_seq = next(self._seq)
        return self._last_seq

    @property
    def last_seq(self) -> int:
        return self._last_seq

    def create_root(self, size: Size) -> LevelCache:
        if self.root is not None:
            self.detach(self.root, release_keys=True)
        self.root = LevelCache(
            parent_level=None,
            parent_index=-1,
            parent_identity=ROOT,
            parent_item=None,
            size=size,
            depth=0,
        )
        self._levels[ROOT] = self.root
        return self.root

    def reset(self, *, release_keys: bool) -> None:
        if self.root is not None:
            self.detach(self.root, release_keys=release_keys)
        self.root = None
        self._contexts.clear()
        self._levels.clear()

    def attach(self, level: LevelCache, local: int, size: Size) -> LevelCache:
        row = level.rows.get(local)
        if row is None:
            raise InvariantViolation(f"cannot attach children to unloaded row {local}")
        existing = level.subcache_at(local)
        if existing is not None:
            self.detach(existing, release_keys=True)
        cache = LevelCache(
            parent_level=level,
            parent_index=local,
            parent_identity=row.identity,
            parent_item=row.item,
            size=size,
            depth=level.depth + 1,
        )
        level._add_subcache(local, cache)
        self._levels[row.identity] = cache
        return cache

    def detach(self, level: LevelCache, *, release_keys: bool) -> list[Hashable]:
        """Drop ``level`` and everything below it; return the identities removed."""
        removed: list[Hashable] = []
        if level.parent_level is not None:
            level.parent_level._drop_subcache(level.parent_index)
        stack = [level]
        while stack:
            current = stack.pop()
            current.detached = True
            if self._levels.get(current.parent_identity) is current:
                del self._levels[current.parent_identity]
            for row in current.rows.values():
                if self._contexts.get(row.identity, (None, -1))[0] is current:
                    del self._contexts[row.identity]
                    removed.append(row.identity)
            current.rows.clear()
            stack.extend(cache for _, cache in current.subcaches())
        if release_keys:
            self._release(removed)
        return removed

    def set_size(self, level: LevelCache, size: Size) -> None:
        level.size = size
        level.count_stale = False
        level.end_bound = None
        if isinstance(size, Known):
            self._truncate(level, size.count)
        level.invalidate_flat()

    def bound_size(self, level: LevelCache, end: int | None) -> None:
        """Cap an unknown-size level at ``end`` children, or lift the cap with ``None``."""
        if end is None:
            level.end_bound = None
            return
        if level.end_bound is not None and level.end_bound <= end:
            return
        level.end_bound = end
        self._truncate(level, end)
        level.invalidate_flat()

    def _truncate(self, level: LevelCache, count: int) -> None:
        removed: list[Hashable] = []
        for local in [local for local in level.rows if local >= count]:
            removed.extend(self._pop_row(level, local))
        for local, cache in list(level.subcaches()):
            if local >= count:
                removed.extend(self.detach(cache, release_keys=False))
        self._release(removed)

    # ------------------------------------------------------------------ #
    # lookups
    # ------------------------------------------------------------------ #

    def level_for(self, parent: Hashable) -> LevelCache | None:
        return self._levels.get(parent)

    def context_of(self, identity: Hashable) -> tuple[LevelCache, int] | None:
        return self._contexts.get(identity)

    def row_of(self, identity: Hashable) -> Row | None:
        context = self._contexts.get(identity)
        if context is None:
            return None
        level, local = context
        return level.rows.get(local)

    def levels(self) -> Iterator[LevelCache]:
        if self.root is None:
            return
        stack = [self.root]
        while stack:
            level = stack.pop()
            yield level
            stack.extend(cache for _, cache in level.subcaches())

    def row_count(self) -> int:
        return len(self._contexts)

    def total_size(self) -> Size:
        if self.root is None:
            return UNKNOWN
        return self.root.flat_size

    def size_of(self, parent: Hashable) -> Size:
        """Flat rows currently contributed below ``parent`` (or ``ROOT``)."""
        if parent is ROOT:
            return self.total_size()
        level = self._levels.get(parent)
        if level is None:
            return Known(0)
        return level.flat_size

    def locate(self, flat_index: int) -> tuple[LevelCache, int] | None:
        if self.root is None or flat_index < 0:
            return None
        level = self.root
        index = flat_index
        while True:
            descended = False
            for sub_index, cache in level.subcaches():
                if index <= sub_index:
                    break
                sub_size = cache.flat_size
                if isinstance(sub_size, Unknown) or index <= sub_index + sub_size.count:
                    level, index = cache, index - sub_index - 1
                    descended = True
                    break
                index -= sub_size.count
            if not descended:
                if not level.in_range(index):
                    return None
                return level, index

    def flat_index_at(self, level: LevelCache, local: int) -> int | None:
        if level.detached:
            return None
        position = level.local_offset(local)
        while position is not None and level.parent_level is not None:
            parent_position = level.parent_level.local_offset(level.parent_index)
            if parent_position is None:
                return None
            position = parent_position + 1 + position
            level = level.parent_level
        return position

    def flat_index_of(self, identity: Hashable) -> int | None:
        context = self._contexts.get(identity)
        if context is None:
            return None
        return self.flat_index_at(*context)

    def flatten(self, start: int, end: int) -> list[FlatEntry]:
        entries: list[FlatEntry] = []
        for flat_index in range(max(start, 0), end):
            located = self.locate(flat_index)
            if located is None:
                break
            level, local = located
            row = level.rows.get(local)
            if row is None:
                entries.append(
                    FlatEntry(
                        flat_index=flat_index,
                        identity=None,
                        item=PENDING,
                        depth=level.depth,
                        parent=level.parent_identity,
                    )
                )
                continue
            depth, parent = level.depth, level.parent_identity
            if self.flattened_source:
                depth, parent = self.flatten_meta(row.item)
            entries.append(
                FlatEntry(
                    flat_index=flat_index,
                    identity=row.identity,
                    item=row.item,
                    depth=depth,
                    parent=parent,
                    stale=row.stale,
                )
            )
        return entries

    def flat_index_of_path(self, path: tuple[int, ...]) -> int:
        """Resolve per-level child indices top-down without expanding anything."""
        if not path:
            raise IndexError("empty path")
        if self.root is None:
            raise LookupError("root level is not loaded")
        level = self.root
        base = 0
        for depth, local in enumerate(path):
            if not level.in_range(local):
                raise IndexError(f"index {local} at depth {depth} is out of range")
            position = level.local_offset(local)
            if position is None:
                raise UnboundedSubtree(level.parent_identity, "position follows a subtree of unknown size")
            flat_index = base + position
            if depth == len(path) - 1:
                return flat_index
            row = level.rows.get(local)
            if row is None:
                raise RowNotLoaded(level, local)
            if not self.expansion.is_expanded(row.identity):
                raise NotExpanded(path[: depth + 1], row.identity)
            cache = level.subcache_at(local)
            if cache is None:
                raise RowNotLoaded(level, local, needs_attach=True)
            level = cache
            base = flat_index + 1
        raise AssertionError("unreachable")

    def positioned_rows(self) -> list[tuple[int | None, LevelCache, int]]:
        result: list[tuple[int | None, LevelCache, int]] = []
        for level in self.levels():
            for local in level.rows:
                result.append((self.flat_index_at(level, local), level, local))
        return result

    # ------------------------------------------------------------------ #
    # row ingestion
    # ------------------------------------------------------------------ #

    def plan_store(self, level: LevelCache, offset: int, rows: list[Row]) -> list[tuple[int, Row]]:
        """Validate a fetched window and decide which rows to write.

        Raises ``IdentityCollision`` without touching the cache when the
        window repeats an identity, or names one that another position holds
        within the same refresh generation.
        """
        seen: set[Hashable] = set()
        for row in rows:
            if row.identity in seen:
                raise IdentityCollision(row.identity, "returned twice in one window")
            seen.add(row.identity)

        window_end = offset + len(rows)
        writes: list[tuple[int, Row]] = []
        for position, row in enumerate(rows):
            local = offset + position
            current = level.rows.get(local)
            if current is not None and not self._superseded_by(current, row):
                continue
            context = self._contexts.get(row.identity)
            if context is not None and context != (level, local):
                other_level, other_local = context
                other = other_level.rows[other_local]
                if other.seq > row.seq:
                    continue
                rewritten_here = other_level is level and offset <= other_local < window_end
                if other.generation == row.generation and not other.stale and not rewritten_here:
                    raise IdentityCollision(
                        row.identity,
                        f"already at index {other_local} under {other_level.parent_identity!r}",
                    )
            writes.append((local, row))
        return writes

    def commit_store(self, level: LevelCache, writes: list[tuple[int, Row]]) -> None:
        displaced: list[Hashable] = []
        for local, row in writes:
            context = self._contexts.get(row.identity)
            if context is not None and context != (level, local):
                other_level, other_local = context
                displaced.extend(self._pop_row(other_level, other_local))
            current = level.rows.get(local)
            if current is not None and current.identity != row.identity:
                if self._contexts.get(current.identity) == (level, local):
                    del self._contexts[current.identity]
                if not current.stale:
                    # stale rows keep their key until a full refresh settles it
                    displaced.append(current.identity)
            cache = level.subcache_at(local)
            if cache is not None and cache.parent_identity != row.identity:
                displaced.extend(self.detach(cache, release_keys=False))
            elif cache is not None:
                cache.parent_item = row.item
            level.rows[local] = row
            self._contexts[row.identity] = (level, local)
        self._release([identity for identity in displaced if identity not in self._contexts])

    def replace_item(self, identity: Hashable, item: Any) -> bool:
        context = self._contexts.get(identity)
        if context is None:
            return False
        level, local = context
        level.rows[local].item = item
        cache = level.subcache_at(local)
        if cache is not None:
            cache.parent_item = item
        return True

    def evict_row(self, level: LevelCache, local: int) -> None:
        """Forget a cached row but keep any children it has on screen."""
        self._release(self._pop_row(level, local, keep_children=True))

    def mark_row_stale(self, level: LevelCache, local: int) -> None:
        row = level.rows.get(local)
        if row is not None:
            row.stale = True
            row.floor_seq = self._last_seq

    def mark_level_stale(self, level: LevelCache) -> None:
        """Force a re-count and re-fetch of ``level`` while keeping its rows visible."""
        level.count_stale = True
        level.floor_seq = self._last_seq
        for row in level.rows.values():
            row.stale = True
            row.floor_seq = self._last_seq

    def descendant_levels(self, level: LevelCache) -> list[LevelCache]:
        result: list[LevelCache] = []
        stack = [cache for _, cache in level.subcaches()]
        while stack:
            current = stack.pop()
            result.append(current)
            stack.extend(cache for _, cache in current.subcaches())
        return result

    def check_invariants(self) -> None:
        for identity, (level, local) in self._contexts.items():
            row = level.rows.get(local)
            if level.detached or row is None or row.identity != identity:
                raise InvariantViolation(f"context of {identity!r} points at a missing row")
        for level in self.levels():
            if level.detached:
                raise InvariantViolation(f"detached level reachable: {level!r}")
            if level.parent_level is not None:
                if not self.flattened_source and not self.expansion.is_expanded(level.parent_identity):
                    raise InvariantViolation(f"children cached for collapsed {level.parent_identity!r}")
                parent_row = level.parent_level.rows.get(level.parent_index)
                if parent_row is not None and parent_row.identity != level.parent_identity:
                    raise InvariantViolation(f"sub-cache of {level.parent_identity!r} sits under another row")
            for local in level.rows:
                if not level.in_range(local):
                    raise InvariantViolation(f"row {local} beyond size {level.size!r}")
            if self._levels.get(level.parent_identity) is not level:
                raise InvariantViolation(f"level of {level.parent_identity!r} is not registered")

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #

    def _superseded_by(self, current: Row, incoming: Row) -> bool:
        if current.stale:
            return incoming.seq > current.floor_seq
        return incoming.seq >= current.seq

    def _pop_row(self, level: LevelCache, local: int, *, keep_children: bool = False) -> list[Hashable]:
        row = level.rows.pop(local, None)
        if row is None:
            return []
        removed: list[Hashable] = []
        if self._contexts.get(row.identity) == (level, local):
            del self._contexts[row.identity]
            removed.append(row.identity)
        if keep_children:
            return removed
        cache = level.subcache_at(local)
        if cache is not None and cache.parent_identity == row.identity:
            # the row vanished from this slot; its children follow it when it reappears
            removed.extend(self.detach(cache, release_keys=False))
        return removed

    def _release(self, identities: list[Hashable]) -> None:
        if self.on_release is None:
            return
        for identity in identities:
            if identity not in self._contexts:
                self.on_release(identity)

    def flatten_meta(self, item: Any) -> tuple[int, Hashable]:
        depth = self.source.get_depth(item)
        try:
            parent = self.source.get_parent(item)
        except UnsupportedOperation:
            return depth, ROOT
        return depth, ROOT if parent is None else self.source.get_id(parent)
