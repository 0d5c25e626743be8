"""Data-source contract consumed by the engine."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Generic, Hashable, Literal, Sequence, TypeVar

from canopy.errors import UnsupportedOperation
from canopy.sizes import Size

T = TypeVar("T")

HierarchyFormat = Literal["nested", "flattened"]
SortKey = Callable[[Any], Any]
ItemFilter = Callable[[Any], bool]


@dataclass(frozen=True, slots=True)
class QueryOptions:
    sort_key: SortKey | None = None
    reverse: bool = False
    filter: ItemFilter | None = None


@dataclass(frozen=True, slots=True)
class HierarchicalQuery(Generic[T]):
    """A bounded request for children of ``parent`` (``None`` for roots)."""

    parent: T | None = None
    offset: int = 0
    limit: int | None = None
    options: QueryOptions = field(default_factory=QueryOptions)
    expanded: frozenset[Hashable] = frozenset()

    def window(self, offset: int, limit: int) -> "HierarchicalQuery[T]":
        return replace(self, offset=offset, limit=limit)


class HierarchicalDataSource(abc.ABC, Generic[T]):
    """Supplies child counts, child windows and identities.

    ``get_child_count`` may return an ``int``, a ``canopy.sizes.Size`` or
    ``None`` when the count is unknown. ``fetch_children`` returns a finite
    list for the strict ``[offset, offset + limit)`` sub-window.
    """

    hierarchy_format: HierarchyFormat = "nested"

    @abc.abstractmethod
    def has_children(self, item: T) -> bool: ...

    @abc.abstractmethod
    async def get_child_count(self, query: HierarchicalQuery[T]) -> int | Size | None: ...

    @abc.abstractmethod
    async def fetch_children(self, query: HierarchicalQuery[T]) -> Sequence[T]: ...

    def get_id(self, item: T) -> Hashable:
        return item  # type: ignore[return-value]

    def is_in_memory(self) -> bool:
        return False

    def get_parent(self, item: T) -> T | None:
        raise UnsupportedOperation(f"{type(self).__name__} does not implement get_parent")

    def get_item_index(self, item: T, query: HierarchicalQuery[T]) -> int:
        raise UnsupportedOperation(f"{type(self).__name__} does not implement get_item_index")

    def get_depth(self, item: T) -> int:
        raise UnsupportedOperation(f"{type(self).__name__} does not implement get_depth")
