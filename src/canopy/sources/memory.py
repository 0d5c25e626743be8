"""In-memory hierarchical container and its data source."""

from __future__ import annotations

from typing import Any, Callable, Generic, Hashable, Iterable, Sequence, TypeVar

from canopy.sources.base import (
    HierarchicalDataSource,
    HierarchicalQuery,
    HierarchyFormat,
    QueryOptions,
)

T = TypeVar("T")

IdGetter = Callable[[Any], Hashable]

_TOP = object()


class TreeData(Generic[T]):
    """Mutable parent/children registry keyed by item identity."""

    def __init__(self, id_getter: IdGetter | None = None) -> None:
        self.id_getter: IdGetter = id_getter or (lambda item: item)
        self._items: dict[Hashable, T] = {}
        self._parents: dict[Hashable, Hashable] = {}
        self._children: dict[Hashable, list[Hashable]] = {_TOP: []}

    def __len__(self) -> int:
        return len(self._items)

    def contains(self, item: T) -> bool:
        return self.id_getter(item) in self._items

    def add_item(self, parent: T | None, item: T) -> "TreeData[T]":
        item_id = self.id_getter(item)
        if item_id in self._items:
            raise ValueError(f"item {item_id!r} is already in the tree")
        parent_key = self._parent_key(parent)
        self._items[item_id] = item
        self._parents[item_id] = parent_key
        self._children[item_id] = []
        self._children[parent_key].append(item_id)
        return self

    def add_items(
        self,
        parent: T | None,
        items: Iterable[T],
        children_of: Callable[[T], Iterable[T]] | None = None,
    ) -> "TreeData[T]":
        """Add ``items`` under ``parent``; ``children_of`` recursively supplies descendants."""
        stack: list[tuple[T | None, list[T]]] = [(parent, list(items))]
        while stack:
            current_parent, batch = stack.pop()
            for item in batch:
                self.add_item(current_parent, item)
                if children_of is not None:
                    children = list(children_of(item))
                    if children:
                        stack.append((item, children))
        return self

    def remove_item(self, item: T) -> "TreeData[T]":
        item_id = self._require_id(item)
        parent_key = self._parents.pop(item_id)
        self._children[parent_key].remove(item_id)
        stack = [item_id]
        while stack:
            current = stack.pop()
            stack.extend(self._children.pop(current, []))
            self._items.pop(current, None)
            self._parents.pop(current, None)
        return self

    def set_parent(self, item: T, parent: T | None) -> "TreeData[T]":
        item_id = self._require_id(item)
        new_parent = self._parent_key(parent)
        cursor = new_parent
        while cursor is not _TOP:
            if cursor == item_id:
                raise ValueError("cannot move an item under its own descendant")
            cursor = self._parents[cursor]
        self._children[self._parents[item_id]].remove(item_id)
        self._children[new_parent].append(item_id)
        self._parents[item_id] = new_parent
        return self

    def move_after(self, item: T, sibling: T | None) -> "TreeData[T]":
        """Move ``item`` right after ``sibling`` (to the front when ``None``)."""
        item_id = self._require_id(item)
        sibling_id = None if sibling is None else self._require_id(sibling)
        if sibling_id is not None and self._parents[sibling_id] != self._parents[item_id]:
            raise ValueError("items are not siblings")
        siblings = self._children[self._parents[item_id]]
        siblings.remove(item_id)
        if sibling_id is None:
            siblings.insert(0, item_id)
        else:
            siblings.insert(siblings.index(sibling_id) + 1, item_id)
        return self

    def replace_item(self, item: T) -> "TreeData[T]":
        """Swap the payload stored for an existing identity."""
        self._items[self._require_id(item)] = item
        return self

    def get_root_items(self) -> list[T]:
        return [self._items[item_id] for item_id in self._children[_TOP]]

    def get_children(self, parent: T | None) -> list[T]:
        return [self._items[item_id] for item_id in self._children[self._parent_key(parent)]]

    def get_parent(self, item: T) -> T | None:
        parent_key = self._parents[self._require_id(item)]
        if parent_key is _TOP:
            return None
        return self._items[parent_key]

    def clear(self) -> None:
        self._items.clear()
        self._parents.clear()
        self._children = {_TOP: []}

    def _parent_key(self, parent: T | None) -> Hashable:
        if parent is None:
            return _TOP
        return self._require_id(parent)

    def _require_id(self, item: T) -> Hashable:
        item_id = self.id_getter(item)
        if item_id not in self._items:
            raise ValueError(f"item {item_id!r} is not in the tree")
        return item_id


class TreeDataSource(HierarchicalDataSource[T]):
    """Serve a ``TreeData`` either level by level or pre-flattened."""

    def __init__(self, tree: TreeData[T], hierarchy_format: HierarchyFormat = "nested") -> None:
        self.tree = tree
        self.hierarchy_format = hierarchy_format

    def get_id(self, item: T) -> Hashable:
        return self.tree.id_getter(item)

    def is_in_memory(self) -> bool:
        return True

    def has_children(self, item: T) -> bool:
        return bool(self.tree.get_children(item))

    async def get_child_count(self, query: HierarchicalQuery[T]) -> int:
        return len(self._rows(query))

    async def fetch_children(self, query: HierarchicalQuery[T]) -> Sequence[T]:
        rows = self._rows(query)
        end = len(rows) if query.limit is None else query.offset + query.limit
        return rows[query.offset:end]

    def get_parent(self, item: T) -> T | None:
        return self.tree.get_parent(item)

    def get_item_index(self, item: T, query: HierarchicalQuery[T]) -> int:
        if not self.tree.contains(item):
            raise ValueError(f"item {self.get_id(item)!r} is not in the tree")
        target = self.get_id(item)
        if self.hierarchy_format == "nested":
            query = HierarchicalQuery(parent=self.tree.get_parent(item), options=query.options)
        for index, row in enumerate(self._rows(query)):
            if self.get_id(row) == target:
                return index
        raise ValueError(f"item {target!r} is not visible for this query")

    def get_depth(self, item: T) -> int:
        depth = 0
        parent = self.tree.get_parent(item)
        while parent is not None:
            depth += 1
            parent = self.tree.get_parent(parent)
        return depth

    def _rows(self, query: HierarchicalQuery[T]) -> list[T]:
        if self.hierarchy_format == "nested":
            return self._level(query.parent, query.options)
        if query.parent is not None:
            return self._level(query.parent, query.options)
        return self._flatten(query)

    def _level(self, parent: T | None, options: QueryOptions) -> list[T]:
        children = self.tree.get_children(parent)
        if options.filter is not None:
            children = [child for child in children if options.filter(child)]
        if options.sort_key is not None:
            children = sorted(children, key=options.sort_key, reverse=options.reverse)
        elif options.reverse:
            children = list(reversed(children))
        return children

    def _flatten(self, query: HierarchicalQuery[T]) -> list[T]:
        result: list[T] = []
        stack: list[list[T]] = [list(reversed(self._level(None, query.options)))]
        while stack:
            pending = stack[-1]
            if not pending:
                stack.pop()
                continue
            item = pending.pop()
            result.append(item)
            if self.get_id(item) in query.expanded:
                children = self._level(item, query.options)
                if children:
                    stack.append(list(reversed(children)))
        return result
