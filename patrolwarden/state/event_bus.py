"""
Event bus for patrol state changes.

Observers (UI, detection resync, audit tooling) subscribe to events and
react without the systems knowing about them. One bus lives on each
PatrolContext; there is no module-level instance.

Usage:
    bus = ctx.bus
    bus.on(EventType.PATROL_UPDATED, my_handler)
    bus.emit(EventType.PATROL_UPDATED, scene_id="s1", patrol_id="a1b2", state="active")

    def my_handler(event: PatrolEvent):
        print(f"Patrol {event.data['patrol_id']} is {event.data['state']}")
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Events that can be published."""

    # Patrol lifecycle
    PATROL_CREATED = "patrol.created"
    PATROL_UPDATED = "patrol.updated"
    PATROL_DELETED = "patrol.deleted"
    PATROL_MOVED = "patrol.moved"
    WAYPOINT_CHANGED = "waypoint.changed"

    # Detection
    DETECTION_SUSPICIOUS = "detection.suspicious"
    DETECTION_ALERT = "detection.alert"
    DETECTION_FIRED = "detection.fired"

    # Capture pipeline
    CAPTURE_RESOLVED = "capture.resolved"
    BRIBERY_RESOLVED = "bribery.resolved"
    COMBAT_STARTED = "combat.started"
    COMBAT_RESOLVED = "combat.resolved"
    BLEED_OUT = "combat.bleed_out"

    # Jail
    JAIL_SCENE_CREATED = "jail.scene_created"
    JAIL_SCENE_RESET = "jail.scene_reset"
    JAIL_SCENE_DELETED = "jail.scene_deleted"
    GUARD_ASSIGNED = "jail.guard_assigned"
    PRISONER_JAILED = "jail.prisoner_jailed"
    PRISONER_RELEASED = "jail.prisoner_released"
    PRISONER_ESCAPED = "jail.prisoner_escaped"

    # Automation
    AI_DECISION_LOGGED = "ai.logged"
    AI_PENDING_QUEUED = "ai.pending_queued"
    AI_PENDING_APPROVED = "ai.pending_approved"
    AI_PENDING_REJECTED = "ai.pending_rejected"
    AI_UNDO = "ai.undo"

    # Reinforcements
    REINFORCEMENTS_CALLED = "reinforcement.called"
    REINFORCEMENT_SPAWNED = "reinforcement.spawned"
    REINFORCEMENT_DESPAWNED = "reinforcement.despawned"

    # Settings
    SETTINGS_CHANGED = "settings.changed"
    SETTINGS_REJECTED = "settings.rejected"


@dataclass
class PatrolEvent:
    """
    One published event.

    `data` carries the event-specific fields passed to emit();
    `scene_id` is empty for global events (AI log, settings).
    """

    type: EventType
    data: dict = field(default_factory=dict)
    scene_id: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def __str__(self) -> str:
        where = f"@{self.scene_id} " if self.scene_id else ""
        return f"[{self.type.value}] {where}{self.data}"


EventHandler = Callable[[PatrolEvent], None]


class EventBus:
    """
    Synchronous event bus.

    Listeners run inside emit(), in subscription order; a listener that
    raises is logged and the rest still run. The last `history_limit`
    events are kept for inspection.
    """

    def __init__(self, history_limit: int = 100):
        self._listeners: dict[EventType, list[EventHandler]] = {}
        self._history: deque[PatrolEvent] = deque(maxlen=history_limit)

    def on(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._listeners.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._listeners.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_type: EventType, scene_id: str = "", **data) -> PatrolEvent:
        """Publish an event and return it."""
        event = PatrolEvent(type=event_type, data=data, scene_id=scene_id or "")
        self._history.append(event)

        for handler in list(self._listeners.get(event_type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Listener for {event_type.value} failed: {e}")

        return event

    def clear(self) -> None:
        """Drop every listener; history is kept."""
        self._listeners.clear()

    def get_history(self, event_type: EventType | None = None) -> list[PatrolEvent]:
        """Recent events, optionally filtered by type."""
        return [e for e in self._history if event_type is None or e.type == event_type]

    def listener_count(self, event_type: EventType) -> int:
        return len(self._listeners.get(event_type, []))
