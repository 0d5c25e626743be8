from __future__ import annotations

import asyncio
import unittest

from canopy.config.models import CacheSettings, EngineSettings, FetchSettings
from canopy.engine import TreeEngine
from canopy.errors import FetchFailed, IdentityCollision
from canopy.markers import PENDING
from canopy.sizes import UNKNOWN, Known
from canopy.sources.memory import TreeData, TreeDataSource

from support import GatedSource, RecordingSource, flat_items, quiet_logger, wait_until


class WindowingTests(unittest.IsolatedAsyncioTestCase):
    async def test_initial_render_then_large_scroll(self) -> None:
        source = RecordingSource(flat_items(1000))
        engine = TreeEngine(source, logger=quiet_logger())

        await engine.request_viewport(0, 100)
        self.assertEqual(source.fetches, [(None, 0, 50), (None, 50, 100)])

        await engine.request_viewport(500, 100)
        self.assertEqual(source.fetches[2:], [(None, 400, 300)])
        self.assertEqual(engine.resolve(699), "item-0699")
        self.assertIs(engine.resolve(700), PENDING)
        self.assertEqual(engine.total_size(), Known(1000))

    async def test_only_the_gap_is_fetched(self) -> None:
        source = RecordingSource(flat_items(200))
        engine = TreeEngine(source, logger=quiet_logger())

        await engine.ensure_loaded(0, 50)
        await engine.ensure_loaded(40, 120)
        await engine.ensure_loaded(10, 100)

        self.assertEqual(source.fetches, [(None, 0, 50), (None, 50, 70)])
        self.assertEqual(source.counts, [None])

    async def test_in_memory_source_loads_whole_levels(self) -> None:
        tree: TreeData[str] = TreeData()
        tree.add_items(None, [f"row-{index}" for index in range(30)])
        engine = TreeEngine(TreeDataSource(tree), logger=quiet_logger())

        await engine.ensure_loaded(0, 5)

        self.assertEqual(engine.resolve(29), "row-29")

    async def test_unknown_count_becomes_known_on_short_page(self) -> None:
        source = RecordingSource(flat_items(120), unknown_counts=True)
        engine = TreeEngine(source, logger=quiet_logger())

        await engine.ensure_loaded(0, 50)
        self.assertIs(engine.total_size(), UNKNOWN)

        await engine.ensure_loaded(50, 200)
        self.assertEqual(engine.total_size(), Known(120))
        self.assertEqual(source.fetches, [(None, 0, 50), (None, 50, 150)])
        with self.assertRaises(IndexError):
            engine.resolve(120)

    async def test_jump_past_the_end_of_an_unknown_level(self) -> None:
        source = RecordingSource(flat_items(120), unknown_counts=True)
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.ensure_loaded(0, 10)

        await engine.request_viewport(500, 100)

        self.assertEqual(engine.total_size(), Known(120))
        self.assertEqual(
            source.fetches,
            [(None, 0, 10), (None, 400, 300), (None, 205, 50), (None, 107, 50)],
        )
        self.assertEqual(engine.resolve(119), "item-0119")
        with self.assertRaises(IndexError):
            engine.resolve(120)
        with self.assertRaises(IndexError):
            engine.resolve(450)

    async def test_empty_page_right_after_cached_rows_is_the_end(self) -> None:
        source = RecordingSource(flat_items(50), unknown_counts=True)
        engine = TreeEngine(source, logger=quiet_logger())

        await engine.ensure_loaded(0, 50)
        self.assertIs(engine.total_size(), UNKNOWN)
        await engine.ensure_loaded(50, 60)

        self.assertEqual(engine.total_size(), Known(50))
        self.assertEqual(source.fetches, [(None, 0, 50), (None, 50, 10)])

    async def test_short_page_shrinks_a_known_count(self) -> None:
        source = RecordingSource(flat_items(7), count_override={None: 10})
        engine = TreeEngine(source, logger=quiet_logger())

        await engine.ensure_loaded(0, 10)

        self.assertEqual(engine.total_size(), Known(7))
        self.assertEqual([entry.loaded for entry in engine.flatten(0, 10)], [True] * 7)

    async def test_expired_rows_are_fetched_again(self) -> None:
        settings = EngineSettings(fetch=FetchSettings(row_ttl_s=30))
        source = RecordingSource(flat_items(10))
        engine = TreeEngine(source, settings, logger=quiet_logger())
        await engine.ensure_loaded(0, 10)

        for row in engine.flattener.root.rows.values():  # type: ignore[union-attr]
            row.fetched_at -= 60
        await engine.ensure_loaded(0, 10)

        self.assertEqual(source.fetches, [(None, 0, 10), (None, 0, 10)])

    async def test_eviction_keeps_rows_near_the_viewport(self) -> None:
        settings = EngineSettings(cache=CacheSettings(max_cached_rows=100))
        source = RecordingSource(flat_items(1000))
        engine = TreeEngine(source, settings, logger=quiet_logger())
        await engine.request_viewport(0, 50)
        pinned = engine.key_of("item-0000")
        engine.pin(pinned)
        dropped = engine.key_of("item-0001")

        await engine.request_viewport(600, 50)

        self.assertEqual(engine.flattener.row_count(), 100)
        self.assertEqual(engine.resolve(620), "item-0620")
        self.assertIs(engine.resolve(0), PENDING)
        self.assertEqual(engine.identity_of(pinned), "item-0000")
        self.assertFalse(engine.identity_of(dropped))


class ConcurrencyTests(unittest.IsolatedAsyncioTestCase):
    async def test_identical_ranges_share_one_fetch(self) -> None:
        source = GatedSource(flat_items(20), gated={None})
        engine = TreeEngine(source, logger=quiet_logger())

        first = asyncio.create_task(engine.ensure_loaded(0, 10))
        second = asyncio.create_task(engine.ensure_loaded(0, 10))
        third = asyncio.create_task(engine.ensure_loaded(2, 5))
        await wait_until(lambda: len(source.pending) == 1)
        await asyncio.sleep(0)
        source.release()
        await asyncio.gather(first, second, third)

        self.assertEqual(source.fetches, [(None, 0, 10)])
        self.assertEqual(engine.resolve(9), "item-0009")

    async def test_newer_request_wins_over_late_older_result(self) -> None:
        versions = {"value": "old"}

        def make_rows() -> list[dict[str, str]]:
            return [{"id": f"r{index}", "v": versions["value"]} for index in range(15)]

        source = GatedSource({None: make_rows()}, gated={None}, get_id=lambda row: row["id"])
        engine = TreeEngine(source, logger=quiet_logger())

        older = asyncio.create_task(engine.ensure_loaded(0, 10))
        await wait_until(lambda: len(source.pending) == 1)
        source.children[None] = [{"id": row["id"], "v": "new"} for row in make_rows()]
        newer = asyncio.create_task(engine.ensure_loaded(5, 15))
        await wait_until(lambda: len(source.pending) == 2)

        source.release(1)
        await newer
        source.release(0)
        await older

        values = [engine.resolve(index)["v"] for index in range(15)]
        self.assertEqual(values, ["old"] * 5 + ["new"] * 10)

    async def test_fetch_for_collapsed_parent_is_discarded(self) -> None:
        source = GatedSource(
            {None: ["p", "q"], "p": ["p1", "p2", "p3"]},
            gated={"p"},
        )
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.ensure_loaded(0, 10)
        await engine.expand("p")

        loading = asyncio.create_task(engine.ensure_loaded(0, 10))
        await wait_until(lambda: len(source.pending) == 1)
        await engine.collapse("p")
        source.release()
        await loading

        self.assertNotIn("p1", engine.keys)
        self.assertEqual(engine.total_size(), Known(2))
        self.assertEqual([entry.identity for entry in engine.flatten(0, 10)], ["p", "q"])


class FailureTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_triple_is_reported_without_aborting_others(self) -> None:
        source = RecordingSource({None: ["bad", "good"], "bad": ["b1"], "good": ["g1", "g2"]})
        source.failing.add("bad")
        engine = TreeEngine(source, logger=quiet_logger())
        await engine.expand("bad")
        await engine.expand("good")

        with self.assertRaises(FetchFailed) as caught:
            await engine.ensure_loaded(0, 10)

        self.assertEqual(caught.exception.triple.parent, "bad")
        self.assertIsInstance(caught.exception.cause, ConnectionError)
        self.assertIn("g1", engine.keys)
        self.assertNotIn("b1", engine.keys)

    async def test_duplicate_identity_in_a_window_fails_loudly(self) -> None:
        source = RecordingSource({None: ["a", "b", "a"]})
        engine = TreeEngine(source, logger=quiet_logger())

        with self.assertRaises(IdentityCollision):
            await engine.ensure_loaded(0, 3)

        self.assertEqual(len(engine.keys), 0)
        self.assertIs(engine.resolve(0), PENDING)


if __name__ == "__main__":
    unittest.main()
