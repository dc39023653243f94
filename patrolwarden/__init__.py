"""Patrolwarden: NPC patrol automation for tabletop scenes."""

from .context import ManualClock, MemoryNotifier, PatrolContext
from .errors import (
    ApprovalRequired,
    ConfigurationInvalid,
    MissingCapability,
    MissingReference,
    PartialUndoFailure,
    PatrolError,
    UndoUnavailable,
)
from .state import MemoryWorld, PatrolManager, Settings

__version__ = "0.1.0"

__all__ = [
    "ApprovalRequired",
    "ConfigurationInvalid",
    "ManualClock",
    "MemoryNotifier",
    "MemoryWorld",
    "MissingCapability",
    "MissingReference",
    "PartialUndoFailure",
    "PatrolContext",
    "PatrolError",
    "PatrolManager",
    "UndoUnavailable",
    "Settings",
]
