"""Watchdog-driven refreshes for a filesystem-backed engine."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from canopy.runtime_logging import get_runtime_logger

if TYPE_CHECKING:
    from canopy.engine import TreeEngine


class _DebouncedRefreshHandler(FileSystemEventHandler):
    """Collect changed directories and refresh them once events settle."""

    def __init__(
        self,
        engine: "TreeEngine",
        loop: asyncio.AbstractEventLoop,
        *,
        root: Path,
        debounce_s: float = 0.25,
    ) -> None:
        super().__init__()
        self.engine = engine
        self.loop = loop
        self.root = root
        self.debounce_s = debounce_s
        self._lock = threading.Lock()
        self._last_event_at = 0.0
        self._dirty: set[str] = set()
        self._timer: threading.Timer | None = None
        self._logger = get_runtime_logger().bind(root=str(root))

    def on_any_event(self, event: FileSystemEvent) -> None:
        paths = [getattr(event, "src_path", ""), getattr(event, "dest_path", "")]
        with self._lock:
            for path in paths:
                if path:
                    self._dirty.add(self.parent_identity(Path(str(path))))
            self._last_event_at = time.monotonic()
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_s, self._fire_if_stable)
            self._timer.start()
        self._logger.debug(
            "watch.event",
            event_type=getattr(event, "event_type", "unknown"),
            src_path=str(getattr(event, "src_path", "")),
        )

    def parent_identity(self, path: Path) -> str:
        """Identity of the directory whose listing ``path`` belongs to ("" for the root)."""
        try:
            rel = path.resolve().relative_to(self.root)
        except ValueError:
            return ""
        parent = rel.parent.as_posix()
        return "" if parent == "." else parent

    def _fire_if_stable(self) -> None:
        with self._lock:
            remaining = self.debounce_s - (time.monotonic() - self._last_event_at)
            if remaining > 0:
                self._timer = threading.Timer(remaining, self._fire_if_stable)
                self._timer.start()
                return
            dirty, self._dirty = self._dirty, set()
        if dirty:
            self.loop.call_soon_threadsafe(self._schedule, sorted(dirty))

    def _schedule(self, identities: list[str]) -> None:
        task = self.loop.create_task(self._refresh(identities))
        task.add_done_callback(self._report)

    async def _refresh(self, identities: list[str]) -> None:
        if "" in identities:
            await self.engine.refresh_all()
            return
        for identity in identities:
            await self.engine.refresh_item(identity)

    def _report(self, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("watch.refresh.failed", error=str(exc))
        else:
            self._logger.debug("watch.refresh.fired")


class WatchManager:
    """Shared observer that refreshes engines when their directories change."""

    def __init__(self) -> None:
        self._observer = Observer()
        self._observer.start()
        self._watches: dict[tuple[Path, int], Any] = {}
        self._logger = get_runtime_logger()
        self._logger.info("watch.manager.started")

    def watch(
        self,
        root: Path,
        engine: "TreeEngine",
        loop: asyncio.AbstractEventLoop,
        *,
        debounce_s: float = 0.25,
    ) -> None:
        key = (root.resolve(), id(engine))
        if key in self._watches:
            self._logger.debug("watch.manager.reused", path=str(key[0]))
            return
        handler = _DebouncedRefreshHandler(engine, loop, root=key[0], debounce_s=debounce_s)
        self._watches[key] = self._observer.schedule(handler, str(key[0]), recursive=True)
        self._logger.info("watch.manager.watch", path=str(key[0]))

    def unwatch(self, root: Path, engine: "TreeEngine") -> None:
        watch = self._watches.pop((root.resolve(), id(engine)), None)
        if watch is None:
            return
        self._observer.unschedule(watch)
        self._logger.info("watch.manager.unwatch", path=str(root))

    def close(self) -> None:
        self._observer.stop()
        self._observer.join(timeout=2)
        self._watches.clear()
        self._logger.info("watch.manager.closed")


class NullWatchManager:
    """No-op watcher for tests and restricted environments."""

    def watch(self, root: Path, engine: "TreeEngine", loop: asyncio.AbstractEventLoop, *, debounce_s: float = 0.25) -> None:  # noqa: ARG002
        return

    def unwatch(self, root: Path, engine: "TreeEngine") -> None:  # noqa: ARG002
        return

    def close(self) -> None:
        return
