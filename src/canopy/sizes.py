"""Closed size type for child counts that may be unbounded."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True, slots=True)
class Known:
    count: int

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError(f"size cannot be negative: {self.count}")


@dataclass(frozen=True, slots=True)
class Unknown:
    def __repr__(self) -> str:
        return "UNKNOWN"


Size = Known | Unknown

UNKNOWN = Unknown()


def as_size(value: int | Size | None) -> Size:
    """Normalize a data-source count; ``None`` means unknown."""
    if isinstance(value, (Known, Unknown)):
        return value
    if value is None:
        return UNKNOWN
    return Known(int(value))


def add_sizes(sizes: Iterable[Size]) -> Size:
    total = 0
    for size in sizes:
        match size:
            case Known(count):
                total += count
            case Unknown():
                return UNKNOWN
    return Known(total)


def is_known(size: Size) -> bool:
    return isinstance(size, Known)
