"""
Waypoint/blink scheduler.

Moves patrol tokens between waypoints. Each call to advance() performs at
most one phase transition, so a patrol driven by the tick loop walks
through: VISIBLE dwell -> (TELEGRAPH -> HIDDEN) or WALKING -> VISIBLE.

Runtime state (phase timers, ping-pong direction, walk segment) lives in
memory only and is rebuilt when a patrol starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import MissingReference
from ..state.event_bus import EventType
from ..state.schema import BlinkPattern, Patrol, PatrolMode, Waypoint
from ..tools.dice import apply_variance
from .sampler import sample_weighted

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    VISIBLE = "visible"      # Dwelling at the current waypoint
    TELEGRAPH = "telegraph"  # Warning shown at the blink target
    HIDDEN = "hidden"        # Blinked out, already moved
    WALKING = "walking"      # Interpolating toward the target


@dataclass
class PatrolRuntime:
    phase: Phase
    phase_ends_at: float
    direction: int = 1
    target_index: int | None = None
    walk_from: tuple[float, float] | None = None
    walk_to: tuple[float, float] | None = None
    walk_started_at: float = 0.0
    paused_at: float | None = None

    @property
    def visible(self) -> bool:
        return self.phase != Phase.HIDDEN


class PatrolScheduler:
    """Per-patrol movement timing and waypoint selection."""

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager
        self._runtimes: dict[str, PatrolRuntime] = {}

    @property
    def ctx(self):
        return self.manager.ctx

    def get_runtime(self, patrol_id: str) -> PatrolRuntime | None:
        return self._runtimes.get(patrol_id)

    def is_visible(self, patrol: Patrol) -> bool:
        runtime = self._runtimes.get(patrol.id)
        return runtime is None or runtime.visible

    # -------------------------------------------------------------------------
    # Timing
    # -------------------------------------------------------------------------

    def jitter(self, base: float, patrol: Patrol) -> float:
        return apply_variance(base, patrol.timing_variance, self.ctx.rng)

    def dwell_for(self, patrol: Patrol, waypoint: Waypoint | None) -> float:
        base = patrol.appear_duration
        if waypoint is not None and waypoint.appear_duration is not None:
            base = waypoint.appear_duration
        return self.jitter(base, patrol)

    # -------------------------------------------------------------------------
    # Waypoint selection
    # -------------------------------------------------------------------------

    def _slots(self, patrol: Patrol) -> list[Waypoint | None]:
        state = self.manager._scene_state(patrol.scene_id)
        return [state.get_waypoint(w) for w in patrol.waypoint_ids]

    def select_next_index(self, patrol: Patrol, runtime: PatrolRuntime | None = None) -> int:
        """
        Index of the next waypoint for the patrol's pattern.

        Duplicate waypoints are distinct indices. Disabled or missing
        waypoints are skipped whenever another candidate exists.
        """
        slots = self._slots(patrol)
        count = len(slots)
        if count < 2:
            return 0
        current = patrol.current_waypoint_index
        usable = [i for i, w in enumerate(slots) if w is not None and not w.disabled]

        pattern = patrol.blink_pattern
        if patrol.mode == PatrolMode.WALK:
            pattern = BlinkPattern.SEQUENTIAL

        if pattern == BlinkPattern.SEQUENTIAL:
            for step in range(1, count + 1):
                candidate = (current + step) % count
                if candidate in usable:
                    return candidate
            return (current + 1) % count

        if pattern == BlinkPattern.PING_PONG:
            direction = runtime.direction if runtime else 1
            position = current
            for _ in range(2 * count):
                if not 0 <= position + direction < count:
                    direction = -direction
                position += direction
                if position in usable:
                    break
            if runtime:
                runtime.direction = direction
            return position

        candidates = [i for i in usable if i != current] or [i for i in range(count) if i != current]

        if pattern == BlinkPattern.WEIGHTED:
            weighted = [(i, max(0.0, slots[i].weight if slots[i] else 0.0)) for i in candidates]
            total = sum(w for _, w in weighted)
            if total <= 0:
                return self.ctx.rng.choice(candidates)
            return sample_weighted(weighted, self.ctx.rng.random() * total)

        if pattern == BlinkPattern.PRIORITY:
            return max(candidates, key=lambda i: (slots[i].priority if slots[i] else 0, -i))

        return self.ctx.rng.choice(candidates)

    # -------------------------------------------------------------------------
    # Token movement
    # -------------------------------------------------------------------------

    def _move_token(self, patrol: Patrol, x: float, y: float, hidden: bool | None = None) -> None:
        changes: dict = {"x": x, "y": y}
        if hidden is not None:
            changes["hidden"] = hidden
        if self.ctx.world.update_token(patrol.token_id, **changes) is None:
            raise MissingReference("token", patrol.token_id)

    def _set_hidden(self, patrol: Patrol, hidden: bool) -> None:
        if self.ctx.world.update_token(patrol.token_id, hidden=hidden) is None:
            raise MissingReference("token", patrol.token_id)

    def _arrive(self, patrol: Patrol, index: int, now: float) -> None:
        patrol.current_waypoint_index = index
        waypoint = self._slots(patrol)[index]
        self.ctx.bus.emit(
            EventType.PATROL_MOVED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            waypoint_id=waypoint.id if waypoint else None,
            index=index,
        )
        logger.debug(f"Patrol {patrol.name} arrived at index {index}")

    # -------------------------------------------------------------------------
    # Lifecycle hooks
    # -------------------------------------------------------------------------

    def begin(self, patrol: Patrol) -> PatrolRuntime:
        """Place the token on its current waypoint and start dwelling."""
        now = self.ctx.now()
        patrol.clamp_index()
        waypoint = self._slots(patrol)[patrol.current_waypoint_index]
        if waypoint is not None:
            self._move_token(patrol, waypoint.x, waypoint.y, hidden=False)
        else:
            self._set_hidden(patrol, False)
        runtime = PatrolRuntime(phase=Phase.VISIBLE, phase_ends_at=now + self.dwell_for(patrol, waypoint))
        self._runtimes[patrol.id] = runtime
        return runtime

    def freeze(self, patrol: Patrol) -> None:
        runtime = self._runtimes.get(patrol.id)
        if runtime is not None and runtime.paused_at is None:
            runtime.paused_at = self.ctx.now()

    def resume(self, patrol: Patrol) -> None:
        """Shift timers by the paused span."""
        runtime = self._runtimes.get(patrol.id)
        if runtime is None:
            self.begin(patrol)
            return
        if runtime.paused_at is None:
            return
        shift = self.ctx.now() - runtime.paused_at
        runtime.phase_ends_at += shift
        runtime.walk_started_at += shift
        runtime.paused_at = None

    def cancel(self, patrol: Patrol) -> None:
        """Drop in-flight movement and make the token visible again."""
        self._runtimes.pop(patrol.id, None)
        if patrol.token_id:
            self.ctx.world.update_token(patrol.token_id, hidden=False)

    def forget_cursor(self, patrol: Patrol) -> None:
        """Waypoint list changed: abandon a target that no longer exists."""
        runtime = self._runtimes.get(patrol.id)
        if runtime is None or runtime.target_index is None:
            return
        if runtime.target_index >= len(patrol.waypoint_ids):
            runtime.target_index = None
            if runtime.phase in (Phase.TELEGRAPH, Phase.WALKING):
                runtime.phase = Phase.VISIBLE
                runtime.phase_ends_at = self.ctx.now()

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def advance(self, patrol: Patrol, now: float | None = None) -> Phase:
        """
        Advance one patrol; returns the phase it is in afterwards.

        Raises:
            MissingReference: the patrol token is gone
        """
        now = self.ctx.now() if now is None else now
        runtime = self._runtimes.get(patrol.id) or self.begin(patrol)
        if runtime.paused_at is not None:
            return runtime.phase

        if runtime.phase == Phase.WALKING and now < runtime.phase_ends_at:
            self._interpolate(patrol, runtime, now)
            return runtime.phase
        if now < runtime.phase_ends_at:
            return runtime.phase

        settings = self.ctx.settings
        slots = self._slots(patrol)

        if runtime.phase == Phase.VISIBLE:
            target = self.select_next_index(patrol, runtime)
            runtime.target_index = target
            waypoint = slots[target]
            if waypoint is None:
                raise MissingReference("waypoint", patrol.waypoint_ids[target])
            walks = patrol.mode == PatrolMode.WALK or (
                patrol.mode == PatrolMode.HYBRID and not waypoint.teleport
            )
            if walks:
                self._start_walk(patrol, runtime, waypoint, now)
            else:
                duration_ms = settings.telegraph_duration
                signal = self.ctx.telegraph.show_telegraph(
                    (waypoint.x, waypoint.y),
                    {
                        "type": settings.telegraph_style,
                        "duration": duration_ms,
                        "color": settings.telegraph_color,
                        "size": self._grid_size(patrol),
                    },
                )
                wait = duration_ms / 1000
                if signal is not None:
                    wait = min(signal, wait)
                runtime.phase = Phase.TELEGRAPH
                runtime.phase_ends_at = now + wait

        elif runtime.phase == Phase.TELEGRAPH:
            target = runtime.target_index or 0
            waypoint = slots[target] if target < len(slots) else None
            if waypoint is None:
                raise MissingReference("waypoint", runtime.target_index)
            self._move_token(patrol, waypoint.x, waypoint.y, hidden=True)
            self._arrive(patrol, target, now)
            runtime.phase = Phase.HIDDEN
            runtime.phase_ends_at = now + self.jitter(patrol.disappear_duration, patrol)

        elif runtime.phase == Phase.HIDDEN:
            self._set_hidden(patrol, False)
            runtime.target_index = None
            runtime.phase = Phase.VISIBLE
            runtime.phase_ends_at = now + self.dwell_for(patrol, slots[patrol.current_waypoint_index])

        elif runtime.phase == Phase.WALKING:
            target = runtime.target_index or 0
            x, y = runtime.walk_to
            self._move_token(patrol, x, y)
            self._arrive(patrol, target, now)
            runtime.target_index = None
            runtime.phase = Phase.VISIBLE
            runtime.phase_ends_at = now + self.dwell_for(patrol, slots[target])

        return runtime.phase

    def _grid_size(self, patrol: Patrol) -> int:
        scene = self.ctx.world.get_scene(patrol.scene_id)
        return scene.grid_size if scene else 100

    def _start_walk(self, patrol: Patrol, runtime: PatrolRuntime, waypoint: Waypoint, now: float) -> None:
        token = self.ctx.world.get_token(patrol.token_id)
        if token is None:
            raise MissingReference("token", patrol.token_id)
        speed = patrol.walk_speed * self._grid_size(patrol)
        distance = waypoint.distance_to(token.x, token.y)
        duration = distance / speed if speed > 0 else 0.0
        runtime.phase = Phase.WALKING
        runtime.walk_from = (token.x, token.y)
        runtime.walk_to = (waypoint.x, waypoint.y)
        runtime.walk_started_at = now
        runtime.phase_ends_at = now + duration

    def _interpolate(self, patrol: Patrol, runtime: PatrolRuntime, now: float) -> None:
        span = runtime.phase_ends_at - runtime.walk_started_at
        progress = 1.0 if span <= 0 else min(1.0, max(0.0, (now - runtime.walk_started_at) / span))
        (x0, y0), (x1, y1) = runtime.walk_from, runtime.walk_to
        self._move_token(patrol, x0 + (x1 - x0) * progress, y0 + (y1 - y0) * progress)
