"""Lazy, paged data sources backed by an external store."""

from __future__ import annotations

import abc
import inspect
from typing import Any, Awaitable, Callable, Hashable, Sequence, TypeVar

from canopy.sizes import Size
from canopy.sources.base import HierarchicalDataSource, HierarchicalQuery

T = TypeVar("T")

CountCallback = Callable[[HierarchicalQuery[Any]], "int | Size | None | Awaitable[int | Size | None]"]
FetchCallback = Callable[[HierarchicalQuery[Any]], "Sequence[Any] | Awaitable[Sequence[Any]]"]


class BackendDataSource(HierarchicalDataSource[T]):
    """Base class for sources that page children out of a backend.

    Subclasses implement ``child_count``, ``fetch_children_from_backend`` and
    ``has_children``; both backend hooks may be plain or ``async`` functions.
    """

    @abc.abstractmethod
    def child_count(self, query: HierarchicalQuery[T]) -> Any: ...

    @abc.abstractmethod
    def fetch_children_from_backend(self, query: HierarchicalQuery[T]) -> Any: ...

    async def get_child_count(self, query: HierarchicalQuery[T]) -> int | Size | None:
        return await _resolve(self.child_count(query))

    async def fetch_children(self, query: HierarchicalQuery[T]) -> Sequence[T]:
        rows = await _resolve(self.fetch_children_from_backend(query))
        rows = list(rows)
        if query.limit is not None and len(rows) > query.limit:
            rows = rows[: query.limit]
        return rows


class CallbackDataSource(BackendDataSource[T]):
    """Backend source assembled from plain callables."""

    def __init__(
        self,
        *,
        count: CountCallback,
        fetch: FetchCallback,
        has_children: Callable[[T], bool],
        get_id: Callable[[T], Hashable] | None = None,
    ) -> None:
        self._count = count
        self._fetch = fetch
        self._has_children = has_children
        self._get_id = get_id

    def has_children(self, item: T) -> bool:
        return self._has_children(item)

    def get_id(self, item: T) -> Hashable:
        if self._get_id is None:
            return super().get_id(item)
        return self._get_id(item)

    def child_count(self, query: HierarchicalQuery[T]) -> Any:
        return self._count(query)

    def fetch_children_from_backend(self, query: HierarchicalQuery[T]) -> Any:
        return self._fetch(query)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
