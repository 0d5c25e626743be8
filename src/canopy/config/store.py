"""Load/save engine settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from canopy.config.models import EngineSettings
from canopy.paths import settings_path
from canopy.runtime_logging import get_runtime_logger

SCHEMA_VERSION = 1


class SettingsStore:
    """JSON settings file addressed by dotted keys such as ``fetch.page_size``."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings_path()

    def load(self) -> EngineSettings:
        if not self.path.exists():
            return self._write_defaults()

        raw = self.path.read_text(encoding="utf-8")
        try:
            data = json.loads(raw)
            settings = EngineSettings.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as exc:
            return self._quarantine(raw, str(exc))
        if settings.schema_version > SCHEMA_VERSION:
            return self._quarantine(raw, f"schema_version {settings.schema_version} is newer than {SCHEMA_VERSION}")
        return settings

    def save(self, settings: EngineSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(settings.model_dump(mode="json"), indent=2, sort_keys=True)
        self.path.write_text(f"{payload}\n", encoding="utf-8")

    def update(self, dotted_key: str, value: Any) -> EngineSettings:
        data = self.load().model_dump()
        parent, leaf = _locate(data, dotted_key)
        parent[leaf] = value
        updated = EngineSettings.model_validate(data)
        self.save(updated)
        return updated

    def reset(self, dotted_key: str) -> EngineSettings:
        """Restore one setting to its default value."""
        defaults = EngineSettings().model_dump()
        default_parent, leaf = _locate(defaults, dotted_key)
        return self.update(dotted_key, default_parent[leaf])

    def _write_defaults(self) -> EngineSettings:
        settings = EngineSettings()
        self.save(settings)
        return settings

    def _quarantine(self, raw: str, reason: str) -> EngineSettings:
        # keep the rejected payload next to the settings file for debugging
        backup = self.path.with_suffix(".corrupt.json")
        backup.write_text(raw, encoding="utf-8")
        get_runtime_logger().warning("settings.quarantined", path=str(self.path), backup=str(backup), reason=reason)
        return self._write_defaults()


def _locate(data: dict[str, Any], dotted_key: str) -> tuple[dict[str, Any], str]:
    keys = dotted_key.split(".")
    cursor = data
    for key in keys[:-1]:
        nested = cursor.get(key)
        if not isinstance(nested, dict):
            raise KeyError(f"Unknown setting path: {dotted_key}")
        cursor = nested
    if keys[-1] not in cursor or isinstance(cursor[keys[-1]], dict):
        raise KeyError(f"Unknown setting path: {dotted_key}")
    return cursor, keys[-1]
