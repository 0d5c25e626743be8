"""Item and full refreshes that keep keys and scroll position stable."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

from canopy.events import EngineEvent, EngineReset
from canopy.fetch import FetchCoordinator
from canopy.flattener import Flattener
from canopy.keys import KeyMapper
from canopy.runtime_logging import RuntimeLogger, get_runtime_logger
from canopy.sizes import Known


@dataclass(frozen=True, slots=True)
class RefreshResult:
    first: int | None
    anchor: Hashable | None
    anchored: bool
    dropped_keys: int


class RefreshCoordinator:
    def __init__(
        self,
        flattener: Flattener,
        fetcher: FetchCoordinator,
        keys: KeyMapper,
        emit: Callable[[EngineEvent], None],
        *,
        find_item: Callable[[Any], Awaitable[int | None]] | None = None,
        logger: RuntimeLogger | None = None,
    ) -> None:
        self.flattener = flattener
        self.fetcher = fetcher
        self.keys = keys
        self._emit = emit
        self._find_item = find_item
        self._logger = logger or get_runtime_logger()
        self.verification_pending = False

    def refresh_item(self, identity: Hashable, *, recursive: bool = False, item: Any = None) -> bool:
        """Invalidate one item (and optionally its subtree) without touching anything else.

        The row keeps its key, flat index and expansion state. Passing ``item``
        swaps the cached payload immediately instead of waiting for a re-fetch.
        The item's own child count is re-fetched on the next load either way.
        """
        self.flattener.generation += 1
        found = False
        context = self.flattener.context_of(identity)
        if context is not None:
            found = True
            level, local = context
            if item is None:
                self.flattener.mark_row_stale(level, local)
            else:
                self.flattener.replace_item(identity, item)

        level = self.flattener.level_for(identity)
        if level is not None:
            found = True
            targets = [level]
            if recursive:
                targets.extend(self.flattener.descendant_levels(level))
            for target in targets:
                self.flattener.mark_level_stale(target)

        self._logger.debug("refresh.item", identity=identity, recursive=recursive, found=found)
        return found

    async def refresh_all(self) -> RefreshResult:
        """Drop every cached level, reload the viewport and re-anchor on the same row.

        The anchor is first looked for in the window reloaded around the old
        position. A row that moved further away is located through the
        source when it can report parents and sibling indices; otherwise the
        viewport is clamped to the new size.
        """
        viewport = self.fetcher.viewport
        anchor: Hashable | None = None
        anchor_item: Any = None
        if viewport is not None:
            located = self.flattener.locate(viewport[0])
            if located is not None:
                row = located[0].rows.get(located[1])
                if row is not None:
                    anchor, anchor_item = row.identity, row.item

        self.flattener.generation += 1
        self.keys.mark_unverified()
        self.flattener.reset(release_keys=False)
        self.fetcher.discard_in_flight()
        self.verification_pending = True
        self._emit(EngineReset("refresh"))
        self._logger.info("refresh.all", anchor=anchor, viewport=viewport)

        if viewport is None:
            return RefreshResult(first=None, anchor=None, anchored=False, dropped_keys=0)

        first, size = viewport
        # reload around the old position so a nearby anchor is found without a second pass
        await self.fetcher.request_viewport(first, size)

        anchored = False
        new_first = first
        if anchor is not None:
            position = self.flattener.flat_index_of(anchor)
            if position is None and self._find_item is not None:
                position = await self._find_item(anchor_item)
            if position is not None:
                new_first, anchored = position, True
        if not anchored:
            total = self.flattener.total_size()
            if isinstance(total, Known):
                new_first = min(first, max(total.count - 1, 0))
        if new_first != first:
            await self.fetcher.request_viewport(new_first, size)

        dropped = self.settle()
        self._logger.info("refresh.anchored", anchor=anchor, first=new_first, anchored=anchored, dropped_keys=dropped)
        return RefreshResult(first=new_first, anchor=anchor, anchored=anchored, dropped_keys=dropped)

    def settle(self) -> int:
        """Release keys that no fetch confirmed since the last full refresh."""
        if not self.verification_pending:
            return 0
        self.verification_pending = False
        return len(self.keys.drop_unverified())
