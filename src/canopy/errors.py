"""Error taxonomy for the tree engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable


class EngineError(Exception):
    """Base class for all engine failures."""


class IdentityCollision(EngineError):
    def __init__(self, identity: Hashable, detail: str = "") -> None:
        self.identity = identity
        self.detail = detail
        message = f"identity {identity!r} is claimed by more than one row"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StaleParentFetch(EngineError):
    """A fetch result arrived for a level that no longer exists."""

    def __init__(self, parent: Hashable) -> None:
        self.parent = parent
        super().__init__(f"stale fetch for parent {parent!r}")


class UnboundedSubtree(EngineError):
    def __init__(self, identity: Hashable, reason: str) -> None:
        self.identity = identity
        self.reason = reason
        super().__init__(f"refusing to enumerate children of {identity!r}: {reason}")


@dataclass(frozen=True, slots=True)
class FetchTriple:
    parent: Hashable
    offset: int
    limit: int

    def __str__(self) -> str:
        return f"({self.parent!r}, {self.offset}, {self.limit})"


class FetchFailed(EngineError):
    def __init__(self, triple: FetchTriple, cause: BaseException) -> None:
        self.triple = triple
        self.cause = cause
        super().__init__(f"fetch {triple} failed: {cause}")


class NotExpanded(EngineError):
    def __init__(self, path: tuple[int, ...], identity: Any = None) -> None:
        self.path = path
        self.identity = identity
        super().__init__(f"ancestor at path {path} is not expanded")


class UnsupportedOperation(EngineError):
    pass


class InvariantViolation(EngineError):
    pass
