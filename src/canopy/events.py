"""Change notifications emitted by the engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Hashable

from canopy.sizes import Size


@dataclass(frozen=True, slots=True)
class ExpandEvent:
    identities: tuple[Hashable, ...]
    recursive: bool = False


@dataclass(frozen=True, slots=True)
class CollapseEvent:
    identities: tuple[Hashable, ...]
    recursive: bool = False
    automatic: bool = False


@dataclass(frozen=True, slots=True)
class RowsLoaded:
    parent: Hashable
    offset: int
    count: int


@dataclass(frozen=True, slots=True)
class SizeChanged:
    parent: Hashable
    size: Size


@dataclass(frozen=True, slots=True)
class EngineReset:
    reason: str


EngineEvent = ExpandEvent | CollapseEvent | RowsLoaded | SizeChanged | EngineReset
Listener = Callable[[EngineEvent], None]
