from __future__ import annotations

import asyncio
import unittest
from typing import Any

from canopy.engine import TreeEngine
from canopy.events import EngineReset
from canopy.sizes import Known
from canopy.sources.base import HierarchicalQuery
from canopy.sources.memory import TreeData, TreeDataSource

from support import GatedSource, RecordingSource, flat_items, quiet_logger, wait_until


def nested_rows() -> dict:
    return {
        None: ["a", "b", "c"],
        "a": [f"a{index}" for index in range(5)],
        "b": [f"b{index}" for index in range(5)],
        "c": [f"c{index}" for index in range(5)],
    }


class IndexedSource(RecordingSource):
    """Flat backend that can report where an item sits."""

    def get_parent(self, item: Any) -> Any:
        return None

    def get_item_index(self, item: Any, query: HierarchicalQuery[Any]) -> int:
        return self.children[None].index(item)


class RefreshItemTests(unittest.IsolatedAsyncioTestCase):
    async def test_renamed_row_keeps_index_and_key(self) -> None:
        tree: TreeData[dict[str, str]] = TreeData(id_getter=lambda row: row["id"])
        tree.add_items(None, [{"id": f"Row {index}", "name": f"Row {index}"} for index in range(10)])
        engine = TreeEngine(TreeDataSource(tree), logger=quiet_logger())
        await engine.request_viewport(0, 10)
        key = engine.key_of("Row 1")

        tree.replace_item({"id": "Row 1", "name": "Updated"})
        await engine.refresh_item("Row 1")

        index = engine.scroll_anchor("Row 1")
        self.assertEqual(index, 1)
        self.assertEqual(engine.resolve(index)["name"], "Updated")
        self.assertEqual(engine.key_of("Row 1"), key)

    async def test_refresh_touches_only_the_item_and_its_children(self) -> None:
        source = RecordingSource(nested_rows())
        engine = TreeEngine(source, logger=quiet_logger())
        for identity in ("a", "b", "c"):
            await engine.expand(identity)
        await engine.request_viewport(0, 20)
        self.assertEqual(engine.total_size(), Known(18))
        fetched = len(source.fetches)
        counted = len(source.counts)

        source.children["b"] = ["b0", "b1", "b2"]
        await engine.refresh_item("b")

        self.assertEqual(engine.size_of("a"), Known(5))
        self.assertEqual(engine.size_of("c"), Known(5))
        self.assertEqual(engine.size_of("b"), Known(3))
        self.assertEqual(engine.total_size(), Known(16))
        self.assertEqual(source.counts[counted:], ["b"])
        self.assertEqual(source.fetches[fetched:], [(None, 1, 1), ("b", 0, 3)])

    async def test_replacement_payload_needs_no_fetch(self) -> None:
        source = RecordingSource({None: ["x", "y"]})
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.ensure_loaded(0, 2)

        found = engine.refresher.refresh_item("y", item="y-edited")

        self.assertTrue(found)
        self.assertEqual(engine.resolve(1), "y-edited")
        self.assertEqual(len(source.fetches), 1)

    async def test_recursive_refresh_reaches_descendants(self) -> None:
        rows = {None: ["a"], "a": ["a/x"], "a/x": ["a/x/1", "a/x/2"]}
        source = RecordingSource(rows)
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.expand("a")
        await engine.expand("a/x")
        await engine.request_viewport(0, 10)
        self.assertEqual(engine.total_size(), Known(4))

        rows["a/x"] = ["a/x/1"]
        await engine.refresh_item("a", recursive=False)
        self.assertEqual(engine.total_size(), Known(4))

        await engine.refresh_item("a", recursive=True)
        self.assertEqual(engine.total_size(), Known(3))
        self.assertTrue(engine.is_expanded("a/x"))


class RefreshAllTests(unittest.IsolatedAsyncioTestCase):
    async def test_anchor_follows_the_first_visible_row(self) -> None:
        source = RecordingSource(flat_items(100))
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.request_viewport(40, 10)
        anchor_key = engine.key_of("item-0040")
        removed_key = engine.key_of("item-0005")

        del source.children[None][:10]
        result = await engine.refresh_all()

        self.assertTrue(result.anchored)
        self.assertEqual(result.first, 30)
        self.assertEqual(engine.resolve(30), "item-0040")
        self.assertEqual(engine.key_of("item-0040"), anchor_key)
        self.assertFalse(engine.identity_of(removed_key))

    async def test_anchor_moved_far_away_is_located_through_the_source(self) -> None:
        source = IndexedSource(flat_items(1000))
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.request_viewport(500, 10)
        anchor_key = engine.key_of("item-0500")

        del source.children[None][:300]
        result = await engine.refresh_all()

        self.assertTrue(result.anchored)
        self.assertEqual(result.first, 200)
        self.assertEqual(engine.resolve(200), "item-0500")
        self.assertEqual(engine.key_of("item-0500"), anchor_key)

    async def test_missing_anchor_clamps_to_the_last_row(self) -> None:
        source = RecordingSource(flat_items(100))
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.request_viewport(95, 5)

        del source.children[None][50:]
        result = await engine.refresh_all()

        self.assertFalse(result.anchored)
        self.assertEqual(result.first, 49)
        self.assertEqual(engine.total_size(), Known(50))

    async def test_expansion_survives_and_reset_is_announced(self) -> None:
        source = RecordingSource(nested_rows())
        engine = TreeEngine(source, logger=quiet_logger())
        events: list[object] = []
        engine.add_listener(events.append)
        await engine.expand("b")
        await engine.request_viewport(0, 10)

        await engine.refresh_all()

        self.assertTrue(engine.is_expanded("b"))
        self.assertEqual(engine.total_size(), Known(8))
        self.assertTrue(any(isinstance(event, EngineReset) for event in events))

    async def test_fetch_for_removed_parent_is_discarded(self) -> None:
        rows = {
            None: ["a"],
            "a": ["a/a", "a/b"],
            "a/a": ["a/a/1", "a/a/2"],
        }
        source = GatedSource(rows, gated={"a/a"})
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.expand("a")
        await engine.expand("a/a")

        loading = asyncio.create_task(engine.request_viewport(0, 10))
        await wait_until(lambda: len(source.pending) == 1)
        rows["a"] = ["a/b"]
        del rows["a/a"]
        await engine.refresh_all()
        source.release()
        await loading

        self.assertEqual([entry.identity for entry in engine.flatten(0, 10)], ["a", "a/b"])
        self.assertNotIn("a/a/1", engine.keys)
        self.assertNotIn("a/a", engine.keys)
        self.assertEqual(engine.total_size(), Known(2))


if __name__ == "__main__":
    unittest.main()
