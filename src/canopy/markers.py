"""Sentinel values shared by the engine components."""

from __future__ import annotations

from typing import Final


class _Marker:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __reduce__(self) -> str:
        return self._name


ROOT: Final = _Marker("ROOT")
"""Parent identity of top-level items."""

PENDING: Final = _Marker("PENDING")
"""A row whose fetch has been issued but not applied yet."""

NOT_VISIBLE: Final = _Marker("NOT_VISIBLE")
"""An identity that has no flat index in the current view."""
