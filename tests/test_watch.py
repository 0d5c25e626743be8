from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from canopy.sources.watch import NullWatchManager, WatchManager, _DebouncedRefreshHandler

from support import quiet_logger, wait_until


class DebouncedRefreshTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        quiet_logger()
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        self.engine = MagicMock()
        self.engine.refresh_item = AsyncMock(return_value=True)
        self.engine.refresh_all = AsyncMock()
        self.handler = _DebouncedRefreshHandler(
            self.engine,
            asyncio.get_running_loop(),
            root=self.root,
            debounce_s=0.01,
        )

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def test_paths_map_to_their_listing_directory(self) -> None:
        self.assertEqual(self.handler.parent_identity(self.root / "a.txt"), "")
        self.assertEqual(self.handler.parent_identity(self.root / "pkg" / "mod.py"), "pkg")
        self.assertEqual(self.handler.parent_identity(self.root / "pkg" / "sub" / "x"), "pkg/sub")
        self.assertEqual(self.handler.parent_identity(Path("/elsewhere/file")), "")

    async def test_changed_directories_are_refreshed_individually(self) -> None:
        self.handler._schedule(["pkg", "pkg/sub"])

        await wait_until(lambda: self.engine.refresh_item.await_count == 2)

        self.assertEqual(
            [call.args[0] for call in self.engine.refresh_item.await_args_list],
            ["pkg", "pkg/sub"],
        )
        self.engine.refresh_all.assert_not_awaited()

    async def test_root_change_refreshes_everything(self) -> None:
        self.handler._schedule(["", "pkg"])

        await wait_until(lambda: self.engine.refresh_all.await_count == 1)

        self.engine.refresh_item.assert_not_awaited()

    async def test_events_are_debounced_into_one_refresh(self) -> None:
        for name in ("one.txt", "two.txt"):
            event = MagicMock(src_path=str(self.root / "pkg" / name), dest_path="", event_type="modified")
            self.handler.on_any_event(event)

        for _ in range(100):
            if self.engine.refresh_item.await_count:
                break
            await asyncio.sleep(0.01)

        self.engine.refresh_item.assert_awaited_once_with("pkg")


class WatchManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_file_changes_reach_the_engine(self) -> None:
        quiet_logger()
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "pkg").mkdir()
            engine = MagicMock()
            engine.refresh_item = AsyncMock(return_value=True)
            engine.refresh_all = AsyncMock()
            manager = WatchManager()
            try:
                manager.watch(root, engine, asyncio.get_running_loop(), debounce_s=0.05)
                (root / "pkg" / "new.txt").write_text("hello", encoding="utf-8")

                for _ in range(500):
                    if engine.refresh_item.await_count or engine.refresh_all.await_count:
                        break
                    await asyncio.sleep(0.01)
                manager.unwatch(root, engine)
            finally:
                manager.close()

        self.assertTrue(engine.refresh_item.await_count or engine.refresh_all.await_count)


class NullWatchManagerTests(unittest.TestCase):
    def test_calls_are_no_ops(self) -> None:
        manager = NullWatchManager()
        manager.watch(Path("."), MagicMock(), MagicMock())
        manager.unwatch(Path("."), MagicMock())
        manager.close()


if __name__ == "__main__":
    unittest.main()
