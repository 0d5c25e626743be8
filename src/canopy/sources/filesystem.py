"""Lazy directory tree source."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from canopy.runtime_logging import get_runtime_logger
from canopy.sources.base import HierarchicalDataSource, HierarchicalQuery
from canopy.sources.filtering import PathFilter


@dataclass(frozen=True, slots=True)
class FsEntry:
    rel_path: str
    is_dir: bool

    @property
    def name(self) -> str:
        return self.rel_path.rsplit("/", 1)[-1]

    @property
    def depth(self) -> int:
        return self.rel_path.count("/")


class FileSystemDataSource(HierarchicalDataSource[FsEntry]):
    """Directories are listed on demand in a worker thread.

    Identities are relative POSIX paths, which keeps equal file names in
    different directories apart.
    """

    def __init__(self, root: Path, *, extra_ignores: list[str] | None = None) -> None:
        self.root = root.expanduser().resolve()
        self.path_filter = PathFilter(self.root, extra_ignores)
        self.logger = get_runtime_logger().bind(root=str(self.root))

    def get_id(self, item: FsEntry) -> str:
        return item.rel_path

    def has_children(self, item: FsEntry) -> bool:
        return item.is_dir

    def entry_for(self, rel_path: str) -> FsEntry:
        path = self.root / rel_path
        if not path.exists():
            raise ValueError(f"no such path under {self.root}: {rel_path}")
        return FsEntry(rel_path=rel_path, is_dir=path.is_dir())

    async def get_child_count(self, query: HierarchicalQuery[FsEntry]) -> int:
        entries = await asyncio.to_thread(self._list, query.parent)
        return len(entries)

    async def fetch_children(self, query: HierarchicalQuery[FsEntry]) -> Sequence[FsEntry]:
        entries = await asyncio.to_thread(self._list, query.parent)
        end = len(entries) if query.limit is None else query.offset + query.limit
        return entries[query.offset:end]

    def get_parent(self, item: FsEntry) -> FsEntry | None:
        if "/" not in item.rel_path:
            return None
        return FsEntry(rel_path=item.rel_path.rsplit("/", 1)[0], is_dir=True)

    def get_item_index(self, item: FsEntry, query: HierarchicalQuery[FsEntry]) -> int:
        siblings = self._list(self.get_parent(item))
        for index, sibling in enumerate(siblings):
            if sibling.rel_path == item.rel_path:
                return index
        raise ValueError(f"{item.rel_path} is not listed under its parent")

    def get_depth(self, item: FsEntry) -> int:
        return item.depth

    def _list(self, parent: FsEntry | None) -> list[FsEntry]:
        directory = self.root if parent is None else self.root / parent.rel_path
        try:
            children = list(directory.iterdir())
        except OSError as exc:
            self.logger.warning("fs.list.failed", path=str(directory), error=str(exc))
            return []

        entries: list[FsEntry] = []
        for child in children:
            if not self.path_filter.include(child):
                continue
            rel = child.relative_to(self.root).as_posix()
            entries.append(FsEntry(rel_path=rel, is_dir=child.is_dir()))
        entries.sort(key=lambda entry: (not entry.is_dir, entry.name.lower()))
        return entries
