"""Lazy hierarchical data virtualization."""

from canopy.config.models import EngineSettings
from canopy.engine import TreeEngine
from canopy.errors import (
    EngineError,
    FetchFailed,
    IdentityCollision,
    InvariantViolation,
    NotExpanded,
    UnboundedSubtree,
    UnsupportedOperation,
)
from canopy.keys import KeyMapper, NotFound
from canopy.markers import NOT_VISIBLE, PENDING, ROOT
from canopy.sizes import UNKNOWN, Known, Size, Unknown
from canopy.version import __version__

__all__ = [
    "EngineError",
    "EngineSettings",
    "FetchFailed",
    "IdentityCollision",
    "InvariantViolation",
    "KeyMapper",
    "Known",
    "NOT_VISIBLE",
    "NotExpanded",
    "NotFound",
    "PENDING",
    "ROOT",
    "Size",
    "TreeEngine",
    "UNKNOWN",
    "UnboundedSubtree",
    "Unknown",
    "UnsupportedOperation",
    "__version__",
]
