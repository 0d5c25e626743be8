"""Expanded-identity bookkeeping and recursive expand/collapse walks."""

from __future__ import annotations

from typing import Any, Hashable, Iterable, Protocol


class ChildWalker(Protocol):
    """What a recursive walk needs to know about the tree."""

    def identity(self, item: Any) -> Hashable: ...

    def has_children(self, item: Any) -> bool: ...

    async def children(self, item: Any) -> list[Any]: ...


class ExpansionModel:
    def __init__(self) -> None:
        self._expanded: set[Hashable] = set()

    def __len__(self) -> int:
        return len(self._expanded)

    def __contains__(self, identity: object) -> bool:
        return identity in self._expanded

    def expand(self, identity: Hashable) -> bool:
        """Return True when the state changed."""
        if identity in self._expanded:
            return False
        self._expanded.add(identity)
        return True

    def collapse(self, identity: Hashable) -> bool:
        if identity not in self._expanded:
            return False
        self._expanded.discard(identity)
        return True

    def is_expanded(self, identity: Hashable) -> bool:
        return identity in self._expanded

    def snapshot(self) -> frozenset[Hashable]:
        return frozenset(self._expanded)

    def clear(self) -> None:
        self._expanded.clear()

    def discard_all(self, identities: Iterable[Hashable]) -> None:
        self._expanded.difference_update(identities)

    async def expand_recursively(
        self,
        roots: Iterable[Any],
        max_depth: int | None,
        walker: ChildWalker,
    ) -> list[Hashable]:
        """Expand ``roots`` and descendants up to ``max_depth`` levels below them.

        ``max_depth=0`` expands only the roots, ``None`` has no limit. Only
        nodes with children are expanded. The walk completes before any
        state changes, so a failure leaves the model untouched.
        """
        targets = await self._collect(roots, max_depth, walker)
        return [identity for identity in targets if self.expand(identity)]

    async def collapse_recursively(
        self,
        roots: Iterable[Any],
        max_depth: int | None,
        walker: ChildWalker,
    ) -> list[Hashable]:
        targets = await self._collect(roots, max_depth, walker)
        return [identity for identity in targets if self.collapse(identity)]

    async def _collect(
        self,
        roots: Iterable[Any],
        max_depth: int | None,
        walker: ChildWalker,
    ) -> list[Hashable]:
        if max_depth is not None and max_depth < 0:
            return []

        collected: list[Hashable] = []
        seen: set[Hashable] = set()
        stack: list[tuple[Any, int | None]] = [(item, max_depth) for item in reversed(list(roots))]
        while stack:
            item, remaining = stack.pop()
            if not walker.has_children(item):
                continue
            identity = walker.identity(item)
            if identity in seen:
                continue
            seen.add(identity)
            collected.append(identity)
            if remaining is not None and remaining <= 0:
                continue
            next_remaining = None if remaining is None else remaining - 1
            children = await walker.children(item)
            stack.extend((child, next_remaining) for child in reversed(children))
        return collected
