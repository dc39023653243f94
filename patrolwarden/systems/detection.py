"""
Detection engine.

Finds occupants a patrol can see and escalates its alert state in two
stages so a single-tick glimpse never triggers an action:

    IDLE --candidate--> SUSPICIOUS --still there--> ALERT (action fires)
    SUSPICIOUS --nobody--> IDLE

While ALERT, every newly seen occupant fires the action once; occupants
leaving range are forgotten. After an outcome resolves, the patrol ignores
that occupant for `detectionCooldown` seconds.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import MissingReference
from ..state.event_bus import EventType
from ..state.schema import (
    AlertState,
    DetectionAction,
    Patrol,
    PatrolState,
    Token,
    TokenDisposition,
    Wall,
)
from ..state.settings import SightCheckMethod

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)


def _orientation(ax, ay, bx, by, cx, cy) -> float:
    return (bx - ax) * (cy - ay) - (by - ay) * (cx - ax)


def segments_intersect(
    p1: tuple[float, float],
    p2: tuple[float, float],
    wall: Wall,
) -> bool:
    """Whether segment p1-p2 crosses a wall segment (touching counts)."""
    q1 = (wall.x1, wall.y1)
    q2 = (wall.x2, wall.y2)
    d1 = _orientation(*q1, *q2, *p1)
    d2 = _orientation(*q1, *q2, *p2)
    d3 = _orientation(*p1, *p2, *q1)
    d4 = _orientation(*p1, *p2, *q2)
    if ((d1 > 0 > d2) or (d1 < 0 < d2)) and ((d3 > 0 > d4) or (d3 < 0 < d4)):
        return True

    def on_segment(a, b, c) -> bool:
        return min(a[0], b[0]) <= c[0] <= max(a[0], b[0]) and min(a[1], b[1]) <= c[1] <= max(a[1], b[1])

    if d1 == 0 and on_segment(q1, q2, p1):
        return True
    if d2 == 0 and on_segment(q1, q2, p2):
        return True
    if d3 == 0 and on_segment(p1, p2, q1):
        return True
    if d4 == 0 and on_segment(p1, p2, q2):
        return True
    return False


def is_friendly(a: Token, b: Token) -> bool:
    """Same disposition, or either side neutral."""
    if a.disposition == b.disposition:
        return True
    return TokenDisposition.NEUTRAL in (a.disposition, b.disposition)


class DetectionEngine:
    """Per-patrol sight checks, alert escalation and detection actions."""

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager
        self._engaged: dict[str, set[str]] = {}
        self._cooldowns: dict[tuple[str, str], float] = {}

    @property
    def ctx(self):
        return self.manager.ctx

    @property
    def settings(self):
        return self.manager.ctx.settings

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def clear(self, patrol_id: str, cooldowns: bool = False) -> None:
        """Forget escalation state for a patrol (cooldowns optional)."""
        self._engaged.pop(patrol_id, None)
        if cooldowns:
            for key in [k for k in self._cooldowns if k[0] == patrol_id]:
                del self._cooldowns[key]

    def reset_alert(self, patrol: Patrol) -> dict:
        """Drop a patrol back to IDLE awareness."""
        return self.manager.reset_alert(patrol.id)

    def mark_resolved(self, patrol_id: str, token_id: str, now: float | None = None) -> None:
        """Start the cooldown for an occupant whose outcome resolved."""
        now = self.ctx.now() if now is None else now
        self._cooldowns[(patrol_id, token_id)] = now + self.settings.detection_cooldown

    def on_cooldown(self, patrol_id: str, token_id: str, now: float) -> bool:
        until = self._cooldowns.get((patrol_id, token_id))
        if until is None:
            return False
        if now >= until:
            del self._cooldowns[(patrol_id, token_id)]
            return False
        return True

    def engaged(self, patrol_id: str) -> set[str]:
        return set(self._engaged.get(patrol_id, set()))

    # -------------------------------------------------------------------------
    # Sight
    # -------------------------------------------------------------------------

    def _is_player_token(self, token: Token) -> bool:
        if token.player_owned:
            return True
        if token.actor_id:
            actor = self.ctx.world.get_actor(token.actor_id)
            if actor is not None:
                return self.ctx.adapter.is_player_actor(actor)
        return False

    def has_line_of_sight(self, scene_id: str, origin: tuple[float, float], target: tuple[float, float]) -> bool:
        scene = self.ctx.world.get_scene(scene_id)
        if scene is None:
            return True
        return not any(segments_intersect(origin, target, wall) for wall in scene.walls)

    def find_candidates(self, patrol: Patrol, now: float | None = None) -> list[Token]:
        """
        Occupants the patrol can currently see, nearest first.

        Raises:
            MissingReference: the patrol token is gone
        """
        now = self.ctx.now() if now is None else now
        settings = self.settings
        world = self.ctx.world

        patrol_token = world.get_token(patrol.token_id)
        if patrol_token is None:
            raise MissingReference("token", patrol.token_id)

        scene = world.get_scene(patrol.scene_id)
        grid_size = scene.grid_size if scene else 100
        waypoint = self.manager.get_waypoint(patrol.current_waypoint_id) if patrol.current_waypoint_id else None
        radius = settings.default_detection_range
        if waypoint is not None and waypoint.detection_range is not None:
            radius = waypoint.detection_range
        origin = (patrol_token.x, patrol_token.y)

        found: list[tuple[float, Token]] = []
        for token in world.get_tokens(patrol.scene_id):
            if token.id == patrol_token.id:
                continue
            if token.hidden and not settings.detect_hidden_players:
                continue
            if token.invisible and not settings.detect_invisible:
                continue
            if is_friendly(patrol_token, token):
                continue
            if not settings.detect_npcs and not self._is_player_token(token):
                continue
            distance = patrol_token.distance_to(token.x, token.y)
            if distance / grid_size > radius:
                continue
            if waypoint is not None and not waypoint.is_in_vision_cone(token.x, token.y, origin=origin):
                continue
            if settings.sight_check_method == SightCheckMethod.RAY and not self.has_line_of_sight(
                patrol.scene_id, origin, (token.x, token.y)
            ):
                continue
            if self.on_cooldown(patrol.id, token.id, now):
                continue
            found.append((distance, token))

        found.sort(key=lambda pair: pair[0])
        return [token for _, token in found]

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------

    def check(self, patrol: Patrol, now: float | None = None) -> list[dict]:
        """
        Run one detection pass; returns the results of fired actions.

        Raises:
            MissingReference: patrol token or macro unresolvable
        """
        now = self.ctx.now() if now is None else now
        if not self.settings.enable_detection or not patrol.detect_enabled:
            return []
        if patrol.state != PatrolState.ACTIVE or not self.manager.scheduler.is_visible(patrol):
            return []

        candidates = self.find_candidates(patrol, now)
        bus = self.ctx.bus

        if patrol.alert_state == AlertState.IDLE:
            if candidates:
                self.manager.set_alert_state(patrol.id, AlertState.SUSPICIOUS)
                bus.emit(
                    EventType.DETECTION_SUSPICIOUS,
                    scene_id=patrol.scene_id,
                    patrol_id=patrol.id,
                    token_ids=[c.id for c in candidates],
                )
                logger.debug(f"Patrol {patrol.name} is suspicious")
            return []

        if patrol.alert_state == AlertState.SUSPICIOUS:
            if not candidates:
                self.manager.set_alert_state(patrol.id, AlertState.IDLE)
                return []
            self._engaged[patrol.id] = {c.id for c in candidates}
            self.manager.set_alert_state(patrol.id, AlertState.ALERT)
            bus.emit(
                EventType.DETECTION_ALERT,
                scene_id=patrol.scene_id,
                patrol_id=patrol.id,
                token_id=candidates[0].id,
            )
            logger.info(f"Patrol {patrol.name} raised the alert on {candidates[0].name}")
            self.manager.reinforcement.on_alert(patrol, candidates, now)
            return [self._fire(patrol, candidates[0])]

        engaged = self._engaged.setdefault(patrol.id, set())
        engaged &= {c.id for c in candidates}
        results = []
        for candidate in candidates:
            if candidate.id in engaged:
                continue
            # One outcome at a time while the GM decides on the last one
            if self.manager.automation.has_pending_for(patrol.id):
                break
            engaged.add(candidate.id)
            results.append(self._fire(patrol, candidate))
        return results

    def _fire(self, patrol: Patrol, token: Token) -> dict:
        action = patrol.detection_action
        self.ctx.bus.emit(
            EventType.DETECTION_FIRED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            token_id=token.id,
            action=action.value,
        )

        if action == DetectionAction.NOTIFY:
            self.ctx.notifier.whisper_gm(f"{patrol.name} spotted {token.name}")
            result = {"success": True, "action": action.value}
        elif action == DetectionAction.ALERT:
            patrol_token = self.ctx.world.get_token(patrol.token_id)
            if patrol_token is not None:
                self.ctx.telegraph.show_telegraph(
                    (patrol_token.x, patrol_token.y),
                    {
                        "type": "alert",
                        "duration": self.settings.telegraph_duration,
                        "color": self.settings.telegraph_color,
                        "size": 1,
                    },
                )
            result = {"success": True, "action": action.value}
        elif action == DetectionAction.COMBAT:
            result = self.manager.capture.resolve_capture(patrol, token)
        elif action == DetectionAction.MACRO:
            if self.ctx.macros is None or not patrol.detection_macro:
                raise MissingReference("macro", patrol.detection_macro)
            self.ctx.macros.run_macro(
                patrol.detection_macro,
                patrol_id=patrol.id,
                token_id=token.id,
                scene_id=patrol.scene_id,
            )
            result = {"success": True, "action": action.value}
        else:
            result = {"success": True, "action": DetectionAction.NONE.value}

        # Retry next tick once the occupant is within capture range
        if result.get("reason") == "out_of_range":
            self._engaged.get(patrol.id, set()).discard(token.id)
        result.setdefault("token_id", token.id)
        return result
