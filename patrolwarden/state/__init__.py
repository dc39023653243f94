"""State management for patrolwarden."""

from .schema import (
    Actor,
    Aggressiveness,
    AiLogEntry,
    AlertState,
    BlinkPattern,
    CaptureOutcome,
    CaptureOutcomeWeights,
    CompositeUndo,
    DetectionAction,
    GlobalState,
    JailScene,
    Patrol,
    PatrolMode,
    PatrolState,
    PendingAction,
    PendingActionType,
    Point,
    Prisoner,
    Reinstate,
    ReleaseFromJail,
    RestoreCurrency,
    RestoreHp,
    RestoreItem,
    Scene,
    SceneState,
    Token,
    TokenDisposition,
    TriState,
    Wall,
    Waypoint,
    resolve,
)
from .event_bus import EventBus, EventType, PatrolEvent
from .settings import JsonSettingsStore, MemorySettingsStore, PatrolSettings, Settings
from .store import JsonPatrolStore, MemoryPatrolStore, PatrolStore
from .world import MemoryWorld
from .manager import PatrolManager

__all__ = [
    # Schema
    "Actor",
    "Aggressiveness",
    "AiLogEntry",
    "AlertState",
    "BlinkPattern",
    "CaptureOutcome",
    "CaptureOutcomeWeights",
    "CompositeUndo",
    "DetectionAction",
    "GlobalState",
    "JailScene",
    "Patrol",
    "PatrolMode",
    "PatrolState",
    "PendingAction",
    "PendingActionType",
    "Point",
    "Prisoner",
    "Reinstate",
    "ReleaseFromJail",
    "RestoreCurrency",
    "RestoreHp",
    "RestoreItem",
    "Scene",
    "SceneState",
    "Token",
    "TokenDisposition",
    "TriState",
    "Wall",
    "Waypoint",
    "resolve",
    # Events
    "EventBus",
    "EventType",
    "PatrolEvent",
    # Settings
    "JsonSettingsStore",
    "MemorySettingsStore",
    "PatrolSettings",
    "Settings",
    # Store
    "JsonPatrolStore",
    "MemoryPatrolStore",
    "PatrolStore",
    "MemoryWorld",
    # Manager
    "PatrolManager",
]
