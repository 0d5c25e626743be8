from __future__ import annotations

import asyncio
from typing import Any, Callable, Hashable, Sequence

from canopy.runtime_logging import RuntimeLogger, configure_runtime_logging
from canopy.sources.backend import BackendDataSource
from canopy.sources.base import HierarchicalQuery
from canopy.sources.memory import TreeData


def quiet_logger() -> RuntimeLogger:
    return configure_runtime_logging(level="off")


class RecordingSource(BackendDataSource[Any]):
    """Paged backend over a ``{parent_id: [child, ...]}`` dict that logs every call."""

    def __init__(
        self,
        children: dict[Hashable | None, list[Any]],
        *,
        get_id: Callable[[Any], Hashable] | None = None,
        unknown_counts: bool = False,
        count_override: dict[Hashable | None, int] | None = None,
        children_flag: Callable[[Any], bool] | None = None,
    ) -> None:
        self.children = children
        self._get_id = get_id
        self.unknown_counts = unknown_counts
        self.count_override = count_override or {}
        self.children_flag = children_flag
        self.fetches: list[tuple[Hashable | None, int, int]] = []
        self.counts: list[Hashable | None] = []
        self.failing: set[Hashable | None] = set()

    def get_id(self, item: Any) -> Hashable:
        return item if self._get_id is None else self._get_id(item)

    def parent_id(self, query: HierarchicalQuery[Any]) -> Hashable | None:
        return None if query.parent is None else self.get_id(query.parent)

    def has_children(self, item: Any) -> bool:
        if self.children_flag is not None:
            return self.children_flag(item)
        return bool(self.children.get(self.get_id(item)))

    def child_count(self, query: HierarchicalQuery[Any]) -> int | None:
        parent = self.parent_id(query)
        self.counts.append(parent)
        if self.unknown_counts:
            return None
        if parent in self.count_override:
            return self.count_override[parent]
        return len(self.children.get(parent, []))

    def fetch_children_from_backend(self, query: HierarchicalQuery[Any]) -> list[Any]:
        parent = self.parent_id(query)
        limit = query.limit if query.limit is not None else len(self.children.get(parent, []))
        self.fetches.append((parent, query.offset, limit))
        if parent in self.failing:
            raise ConnectionError(f"backend unavailable for {parent!r}")
        return list(self.children.get(parent, [])[query.offset : query.offset + limit])


class GatedSource(RecordingSource):
    """Holds fetches for the ``gated`` parents until the test releases them.

    Rows are read when the fetch is issued, so a release after the data
    changed still delivers what the source returned at issue time.
    """

    def __init__(self, children: dict[Hashable | None, list[Any]], *, gated: set[Hashable | None], **kwargs: Any) -> None:
        super().__init__(children, **kwargs)
        self.gated = gated
        self.pending: list[tuple[tuple[Hashable | None, int, int], asyncio.Event]] = []

    async def fetch_children(self, query: HierarchicalQuery[Any]) -> Sequence[Any]:
        rows = self.fetch_children_from_backend(query)
        if self.parent_id(query) not in self.gated:
            return rows
        gate = asyncio.Event()
        self.pending.append((self.fetches[-1], gate))
        await gate.wait()
        return rows

    def release(self, index: int = 0) -> None:
        _, gate = self.pending.pop(index)
        gate.set()


async def wait_until(predicate: Callable[[], bool], *, turns: int = 200) -> None:
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def flat_items(count: int, prefix: str = "item") -> dict[Hashable | None, list[Any]]:
    return {None: [f"{prefix}-{index:04d}" for index in range(count)]}


def family_tree(granddads: int = 3, dads: int = 3, sons: int = 100) -> TreeData[str]:
    tree: TreeData[str] = TreeData()
    for g in range(granddads):
        granddad = f"Granddad {g}"
        tree.add_item(None, granddad)
        for d in range(dads):
            dad = f"Dad {g}/{d}"
            tree.add_item(granddad, dad)
            for s in range(sons):
                tree.add_item(dad, f"Son {g}/{d}/{s}")
    return tree
