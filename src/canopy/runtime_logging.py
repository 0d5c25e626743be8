"""Structured JSONL runtime logging for the engine."""

from __future__ import annotations

import json
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from canopy.paths import state_root

LogLevel = Literal["off", "error", "warning", "info", "debug"]

STDERR_SINK = "-"

_LEVEL_VALUES: dict[str, int] = {
    "off": 100,
    "error": 40,
    "warning": 30,
    "info": 20,
    "debug": 10,
}

_runtime_logger: "RuntimeLogger | None" = None


def parse_level(value: str | None, default: LogLevel = "warning") -> LogLevel:
    if not value:
        return default
    normalized = value.strip().lower()
    if normalized == "warn":
        normalized = "warning"
    if normalized in {"none", "disabled", "0"}:
        normalized = "off"
    if normalized not in _LEVEL_VALUES:
        return default
    return normalized  # type: ignore[return-value]


def resolve_log_file(path: str | Path | None) -> Path | None:
    """Sink file for ``path``; ``None`` means stderr (requested with ``-``)."""
    if path is None:
        return state_root() / "logs" / "canopy.runtime.jsonl"
    if str(path) == STDERR_SINK:
        return None
    return Path(path).expanduser().resolve()


@dataclass(slots=True)
class RuntimeLogger:
    """Append one JSON object per event; ``bind`` adds fields to every event."""

    level: LogLevel
    sink_path: Path | None
    context: dict[str, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def enabled(self, level: str) -> bool:
        current = _LEVEL_VALUES.get(self.level, _LEVEL_VALUES["warning"])
        incoming = _LEVEL_VALUES.get(level, _LEVEL_VALUES["debug"])
        return incoming >= current and current < _LEVEL_VALUES["off"]

    def bind(self, **fields: Any) -> "RuntimeLogger":
        return RuntimeLogger(
            level=self.level,
            sink_path=self.sink_path,
            context={**self.context, **fields},
            _lock=self._lock,
        )

    def log(self, level: str, event: str, **fields: Any) -> None:
        if not self.enabled(level):
            return
        payload = {
            "ts": datetime.now(UTC).isoformat(),
            "level": level,
            "event": event,
            "pid": os.getpid(),
            **self.context,
            **fields,
        }
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            if self.sink_path is None:
                sys.stderr.write(line + "\n")
                return
            self.sink_path.parent.mkdir(parents=True, exist_ok=True)
            with self.sink_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def debug(self, event: str, **fields: Any) -> None:
        self.log("debug", event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self.log("info", event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self.log("warning", event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self.log("error", event, **fields)


class _DisabledLogger(RuntimeLogger):
    def __init__(self) -> None:
        super().__init__(level="off", sink_path=None)

    def bind(self, **fields: Any) -> RuntimeLogger:  # noqa: ARG002
        return self

    def log(self, level: str, event: str, **fields: Any) -> None:  # noqa: ARG002
        return


def configure_runtime_logging(
    *,
    level: str | None = None,
    log_file: str | Path | None = None,
) -> RuntimeLogger:
    """Install the process-wide logger.

    Arguments win over ``CANOPY_LOG_LEVEL`` / ``CANOPY_LOG_FILE``; the level
    defaults to ``warning`` and the sink to the platform state directory.
    """
    global _runtime_logger

    effective_level = parse_level(level or os.getenv("CANOPY_LOG_LEVEL"), default="warning")
    if effective_level == "off":
        _runtime_logger = _DisabledLogger()
        return _runtime_logger

    sink = resolve_log_file(log_file or os.getenv("CANOPY_LOG_FILE"))
    _runtime_logger = RuntimeLogger(level=effective_level, sink_path=sink)
    _runtime_logger.info(
        "logging.configured",
        configured_level=effective_level,
        sink_path=STDERR_SINK if sink is None else str(sink),
    )
    return _runtime_logger


def get_runtime_logger() -> RuntimeLogger:
    global _runtime_logger
    if _runtime_logger is None:
        _runtime_logger = configure_runtime_logging()
    return _runtime_logger
