"""
Reinforcements.

When a patrol raises the alert, 1-4 extra guards are telegraphed onto
other waypoints of the scene's active patrols and removed again after
`reinforcementDuration` seconds. A scene calls for help at most once per
`reinforcementCooldown`. When a capture turns into combat, 1-2 elite
assistants may join from the waypoints next to the patrol's position
after one or two combat rounds.

Spawns and despawns are timed against the context clock and carried out
by `process()`, which the runner calls every tick.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..state.event_bus import EventType
from ..state.schema import Patrol, PatrolState, Token, TokenDisposition, Waypoint

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)

GUARD_VARIANTS: tuple[tuple[str, str], ...] = (
    ("Guard", "#cc0000"),
    ("Soldier", "#0066cc"),
    ("Watchman", "#009933"),
    ("Sentry", "#996600"),
    ("Enforcer", "#660066"),
    ("Warden", "#cc6600"),
)

SPAWN_TELEGRAPH = 2.0  # Seconds of warning before a reinforcement appears
ASSISTANT_TELEGRAPH = 1.5
ROUND_SECONDS = 6
MAX_REINFORCEMENTS = 4
MAX_ASSISTANTS = 2

# Stats used when no guard template is registered
FALLBACK_ASSISTANT = {"hp": 50, "ac": 14, "damage": 10}


def boosted_stats(template: dict | None, target_level: int, multiplier: float) -> dict:
    """Level-scaled guard stats with an assistant's bonus applied."""
    if not template:
        stats = {key: round(value * multiplier) for key, value in FALLBACK_ASSISTANT.items()}
        stats["level"] = target_level
        return stats
    level_diff = max(0, target_level - template["base_level"])
    return {
        "hp": round((template["base_hp"] + template["hp_per_level"] * level_diff) * multiplier),
        "ac": round((template["base_ac"] + template["ac_per_level"] * level_diff) * multiplier),
        "damage": round((template["base_damage"] + template["damage_per_level"] * level_diff) * multiplier),
        "level": target_level,
    }


@dataclass
class ScheduledSpawn:
    """A spawn waiting for its telegraph (or round delay) to run out."""
    kind: str  # "reinforcement" or "assistant"
    scene_id: str
    waypoint_id: str
    x: float
    y: float
    source_patrol_id: str
    due: float
    telegraphed: bool = False
    stats: dict | None = None


@dataclass
class ActiveSpawn:
    """A spawned token this system owns."""
    kind: str
    token_id: str
    scene_id: str
    waypoint_id: str
    source_patrol_id: str
    spawned_at: float
    despawn_at: float | None = None
    flags: dict = field(default_factory=dict)


class ReinforcementSystem:
    """Alert-triggered reinforcements and encounter assistants."""

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager
        self._last_alert: dict[str, float] = {}
        self._scheduled: list[ScheduledSpawn] = []
        self._active: dict[str, ActiveSpawn] = {}

    @property
    def ctx(self):
        return self.manager.ctx

    @property
    def settings(self):
        return self.manager.ctx.settings

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_active(self, kind: str | None = None, scene_id: str | None = None) -> list[ActiveSpawn]:
        return [
            s for s in self._active.values()
            if (kind is None or s.kind == kind) and (scene_id is None or s.scene_id == scene_id)
        ]

    def get_scheduled(self, scene_id: str | None = None) -> list[ScheduledSpawn]:
        return [s for s in self._scheduled if scene_id is None or s.scene_id == scene_id]

    def is_reinforcement(self, token_id: str) -> bool:
        return token_id in self._active

    def cooldown_remaining(self, scene_id: str, now: float | None = None) -> int:
        """Whole seconds until the scene may call for help again."""
        last = self._last_alert.get(scene_id)
        if last is None:
            return 0
        now = self.ctx.now() if now is None else now
        return math.ceil(max(0.0, self.settings.reinforcement_cooldown - (now - last)))

    def reset_cooldown(self, scene_id: str) -> None:
        """GM tool: let the scene call reinforcements right away."""
        if self._last_alert.pop(scene_id, None) is not None:
            self.ctx.notifier.info("Alert cooldown reset")

    # -------------------------------------------------------------------------
    # Alert reinforcements
    # -------------------------------------------------------------------------

    def available_waypoints(self, patrol: Patrol) -> list[Waypoint]:
        """Waypoints of the scene's active patrols, minus where the alert was raised."""
        exclude = patrol.current_waypoint_id
        seen: set[str] = set()
        pool = []
        for other in self.manager.get_patrols(patrol.scene_id):
            if other.state != PatrolState.ACTIVE:
                continue
            for waypoint in self.manager.get_patrol_waypoints(other):
                if waypoint.id == exclude or waypoint.id in seen or waypoint.disabled:
                    continue
                seen.add(waypoint.id)
                pool.append(waypoint)
        return pool

    def on_alert(self, patrol: Patrol, detected: list[Token], now: float | None = None) -> dict:
        """Call reinforcements for a patrol that just raised the alert."""
        if not self.settings.reinforcements_enabled:
            return {"success": False, "reason": "disabled"}
        now = self.ctx.now() if now is None else now

        remaining = self.cooldown_remaining(patrol.scene_id, now)
        if remaining:
            logger.debug(f"Reinforcement cooldown active on {patrol.scene_id}: {remaining}s remaining")
            return {"success": False, "reason": "cooldown", "remaining": remaining}
        self._last_alert[patrol.scene_id] = now

        pool = self.available_waypoints(patrol)
        if not pool:
            logger.debug(f"No waypoints for reinforcements around {patrol.name}")
            return {"success": False, "reason": "no_waypoints"}

        rng = self.ctx.rng
        count = rng.randint(1, MAX_REINFORCEMENTS)
        chosen = rng.sample(pool, min(count, len(pool)))

        intruder = next((t for t in detected if t.player_owned), detected[0] if detected else None)
        intruder_name = intruder.name if intruder else "Unknown"
        self.ctx.notifier.whisper_gm(f"ALERT! {intruder_name} was spotted; {len(chosen)} reinforcements responding")
        self.ctx.notifier.info(f"ALERT TRIGGERED! {len(chosen)} reinforcements incoming!")

        for waypoint in chosen:
            self.ctx.telegraph.show_telegraph(
                (waypoint.x, waypoint.y),
                {"type": "warning", "duration": int(SPAWN_TELEGRAPH * 1000), "color": "#ff4444", "size": 1},
            )
            self._scheduled.append(ScheduledSpawn(
                kind="reinforcement",
                scene_id=patrol.scene_id,
                waypoint_id=waypoint.id,
                x=waypoint.x,
                y=waypoint.y,
                source_patrol_id=patrol.id,
                due=now + SPAWN_TELEGRAPH,
                telegraphed=True,
            ))

        self.ctx.bus.emit(
            EventType.REINFORCEMENTS_CALLED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            token_id=intruder.id if intruder else None,
            count=len(chosen),
            waypoint_ids=[w.id for w in chosen],
        )
        logger.info(f"{patrol.name} called {len(chosen)} reinforcements")
        return {"success": True, "count": len(chosen), "waypoint_ids": [w.id for w in chosen]}

    # -------------------------------------------------------------------------
    # Encounter assistants
    # -------------------------------------------------------------------------

    def adjacent_waypoints(self, patrol: Patrol) -> list[Waypoint]:
        """The waypoints before and after the patrol's cursor."""
        waypoints = self.manager.get_patrol_waypoints(patrol)
        index = patrol.current_waypoint_index
        adjacent = []
        if 0 < index <= len(waypoints):
            adjacent.append(waypoints[index - 1])
        if index + 1 < len(waypoints):
            adjacent.append(waypoints[index + 1])
        return adjacent

    def assistant_stats(self, patrol: Patrol, multiplier: float) -> dict:
        jail = self.manager.jail
        template = jail.guard_templates.get("elite-guard") or jail.guard_templates.get("default-guard")
        return boosted_stats(template, jail.party_level(), multiplier)

    def on_capture_start(self, patrol: Patrol, token: Token, now: float | None = None) -> dict:
        """Maybe send elite backup to a fight the patrol just started."""
        if not self.settings.reinforcements_enabled:
            return {"success": False, "reason": "disabled"}
        now = self.ctx.now() if now is None else now
        rng = self.ctx.rng

        if rng.random() * 100 >= self.settings.assistant_chance:
            logger.debug(f"No assistants for {patrol.name}")
            return {"success": False, "reason": "no_backup"}

        adjacent = self.adjacent_waypoints(patrol)
        if not adjacent:
            logger.debug(f"No adjacent waypoints for {patrol.name}'s assistants")
            return {"success": False, "reason": "no_waypoints"}

        count = rng.randint(1, MAX_ASSISTANTS)
        multiplier = 1.1 + rng.random() * 0.1
        stats = self.assistant_stats(patrol, multiplier)
        delays = []
        for i in range(count):
            waypoint = adjacent[i % len(adjacent)]
            rounds = rng.randint(1, 2)
            delays.append(rounds)
            self._scheduled.append(ScheduledSpawn(
                kind="assistant",
                scene_id=patrol.scene_id,
                waypoint_id=waypoint.id,
                x=waypoint.x,
                y=waypoint.y,
                source_patrol_id=patrol.id,
                due=now + rounds * ROUND_SECONDS,
                stats=dict(stats),
            ))
        logger.info(f"{count} assistants heading to {patrol.name}'s fight with {token.name}")
        return {"success": True, "count": count, "rounds": delays, "stats": stats}

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def process(self, now: float | None = None) -> dict:
        """Spawn what is due and remove reinforcements whose time is up."""
        now = self.ctx.now() if now is None else now
        spawned: list[str] = []
        waiting: list[ScheduledSpawn] = []

        for entry in self._scheduled:
            if entry.due > now:
                waiting.append(entry)
            elif not entry.telegraphed:
                # Assistants get their warning once the round delay is over
                self.ctx.telegraph.show_telegraph(
                    (entry.x, entry.y),
                    {"type": "warning", "duration": int(ASSISTANT_TELEGRAPH * 1000), "color": "#ff6600", "size": 1},
                )
                entry.telegraphed = True
                entry.due = now + ASSISTANT_TELEGRAPH
                waiting.append(entry)
            else:
                token_id = self._spawn(entry, now)
                if token_id:
                    spawned.append(token_id)
        self._scheduled = waiting

        despawned = [
            s.token_id for s in list(self._active.values())
            if s.despawn_at is not None and s.despawn_at <= now
        ]
        for token_id in despawned:
            self._despawn(token_id)
        return {"spawned": spawned, "despawned": despawned}

    def _guard_actor_id(self, patrol: Patrol | None) -> str | None:
        if patrol is None:
            return None
        if patrol.guard_actor_id:
            return patrol.guard_actor_id
        token = self.ctx.world.get_token(patrol.token_id) if patrol.token_id else None
        return token.actor_id if token else None

    def _spawn(self, entry: ScheduledSpawn, now: float) -> str | None:
        patrol = self.manager.get_patrol(entry.source_patrol_id)
        if entry.kind == "assistant":
            name = "Elite Backup"
            flags = {"isAssistant": True, "scaledStats": entry.stats, "tint": "#ff6600"}
            despawn_at = None
        else:
            name, tint = self.ctx.rng.choice(GUARD_VARIANTS)
            flags = {"isReinforcement": True, "variant": name, "tint": tint}
            name = f"{name} (Reinforcement)"
            despawn_at = now + self.settings.reinforcement_duration
        flags["sourcePatrolId"] = entry.source_patrol_id

        if self.ctx.world.get_scene(entry.scene_id) is None:
            logger.warning(f"Scene {entry.scene_id} is gone; dropping {entry.kind} spawn")
            return None
        token = self.ctx.world.create_token(Token(
            scene_id=entry.scene_id,
            name=name,
            x=entry.x,
            y=entry.y,
            actor_id=self._guard_actor_id(patrol),
            disposition=TokenDisposition.HOSTILE,
            flags=flags,
        ))
        self._active[token.id] = ActiveSpawn(
            kind=entry.kind,
            token_id=token.id,
            scene_id=entry.scene_id,
            waypoint_id=entry.waypoint_id,
            source_patrol_id=entry.source_patrol_id,
            spawned_at=now,
            despawn_at=despawn_at,
            flags=flags,
        )
        self.ctx.bus.emit(
            EventType.REINFORCEMENT_SPAWNED,
            scene_id=entry.scene_id,
            token_id=token.id,
            kind=entry.kind,
            waypoint_id=entry.waypoint_id,
            patrol_id=entry.source_patrol_id,
        )
        logger.debug(f"Spawned {name} at ({entry.x}, {entry.y})")
        return token.id

    def _despawn(self, token_id: str) -> bool:
        spawn = self._active.pop(token_id, None)
        if spawn is None:
            return False
        removed = self.ctx.world.delete_token(token_id)
        self.ctx.bus.emit(
            EventType.REINFORCEMENT_DESPAWNED,
            scene_id=spawn.scene_id,
            token_id=token_id,
            kind=spawn.kind,
        )
        logger.debug(f"Despawned {spawn.kind} {token_id}")
        return removed

    def despawn_all(self, scene_id: str | None = None) -> int:
        """Remove every spawned token (and drop pending spawns) for a scene, or all."""
        self._scheduled = [s for s in self._scheduled if scene_id is not None and s.scene_id != scene_id]
        token_ids = [s.token_id for s in self.get_active(scene_id=scene_id)]
        for token_id in token_ids:
            self._despawn(token_id)
        return len(token_ids)
