from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from pydantic import ValidationError

from canopy.config.models import CacheSettings, EngineSettings, FetchSettings
from canopy.config.store import SettingsStore


class SettingsStoreTests(unittest.TestCase):
    def test_load_save_update_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            store = SettingsStore(path)

            settings = store.load()
            self.assertTrue(path.exists())
            self.assertEqual(settings.schema_version, 1)
            self.assertEqual(settings.fetch.page_size, 50)

            updated = store.update("fetch.page_size", 25)
            self.assertEqual(updated.fetch.page_size, 25)

            reloaded = store.load()
            self.assertEqual(reloaded.fetch.page_size, 25)
            self.assertEqual(reloaded.expansion.empty_expanded_policy, "collapse")

    def test_corrupt_file_is_backed_up_and_replaced(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            path.write_text("{not json", encoding="utf-8")

            settings = SettingsStore(path).load()

            self.assertEqual(settings, EngineSettings())
            self.assertEqual(path.with_suffix(".corrupt.json").read_text(encoding="utf-8"), "{not json")
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["fetch"]["page_size"], 50)

    def test_unknown_key_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = SettingsStore(Path(tmp) / "settings.json")

            with self.assertRaises(KeyError):
                store.update("fetch.nope", 1)
            with self.assertRaises(KeyError):
                store.update("strict.deeper", True)

    def test_invalid_value_is_not_saved(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = SettingsStore(Path(tmp) / "settings.json")

            with self.assertRaises(ValidationError):
                store.update("expansion.empty_expanded_policy", "explode")

            self.assertEqual(store.load().expansion.empty_expanded_policy, "collapse")

    def test_reset_restores_the_default(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = SettingsStore(Path(tmp) / "settings.json")
            store.update("cache.max_cached_rows", 900)

            restored = store.reset("cache.max_cached_rows")

            self.assertEqual(restored.cache.max_cached_rows, 5000)
            with self.assertRaises(KeyError):
                store.reset("cache")

    def test_newer_schema_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            path.write_text(json.dumps({"schema_version": 99, "strict": True}), encoding="utf-8")

            settings = SettingsStore(path).load()

            self.assertFalse(settings.strict)
            self.assertTrue(path.with_suffix(".corrupt.json").exists())


class EngineSettingsTests(unittest.TestCase):
    def test_cache_must_hold_a_page(self) -> None:
        with self.assertRaises(ValidationError):
            EngineSettings(fetch=FetchSettings(page_size=200), cache=CacheSettings(max_cached_rows=100))

    def test_setting_items_are_dotted(self) -> None:
        items = dict(EngineSettings().setting_items())

        self.assertEqual(items["fetch.page_size"], "50")
        self.assertEqual(items["fetch.row_ttl_s"], "None")
        self.assertEqual(items["strict"], "False")


if __name__ == "__main__":
    unittest.main()
