"""
Jail subsystem.

Creates jail scenes from layout templates, spawns level-scaled guards,
keeps the per-scene guard actor cache and the prisoner registry, and
handles timed release and escape attempts.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from ..errors import ConfigurationInvalid, MissingReference
from ..state.event_bus import EventType
from ..state.schema import (
    Actor,
    JailScene,
    Point,
    Prisoner,
    Scene,
    Token,
    TokenDisposition,
)
from ..tools.dice import roll_check

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)

_UNSET: Any = object()

JAIL_TEMPLATES: dict[str, dict] = {
    "jail_1": {
        "name": "Jail 1",
        "description": "Castle dungeon prison with multiple cells",
        "width": 1000,
        "height": 1000,
        "grid_size": 100,
        "captured_spawn": {"x": 146, "y": 224},
        "group_spawn": {"x": 755, "y": 24},
        "guard_spawns": [
            {"x": 198, "y": 661, "name": "Patrol 1"},
            {"x": 98, "y": 752, "name": "Patrol 2"},
            {"x": 752, "y": 855, "name": "Patrol 3"},
            {"x": 477, "y": 489, "name": "Patrol 4"},
        ],
        "cells": [
            {"x": 65, "y": 361},
            {"x": 273, "y": 629},
            {"x": 600, "y": 907},
        ],
        "patrol_routes": [
            {"name": "Route 1 - Main Hall", "waypoints": [
                {"x": 198, "y": 661}, {"x": 300, "y": 661}, {"x": 300, "y": 500}, {"x": 198, "y": 500},
            ]},
            {"name": "Route 2 - Cell Block A", "waypoints": [
                {"x": 98, "y": 752}, {"x": 98, "y": 400}, {"x": 200, "y": 400}, {"x": 200, "y": 752},
            ]},
            {"name": "Route 3 - Cell Block B", "waypoints": [
                {"x": 752, "y": 855}, {"x": 600, "y": 855}, {"x": 600, "y": 700}, {"x": 752, "y": 700},
            ]},
            {"name": "Route 4 - Central", "waypoints": [
                {"x": 477, "y": 489}, {"x": 550, "y": 489}, {"x": 550, "y": 600}, {"x": 477, "y": 600},
            ]},
        ],
    },
}

GUARD_TEMPLATES: dict[str, dict] = {
    "default-guard": {
        "name": "Default Guard",
        "base_level": 1,
        "base_hp": 30,
        "hp_per_level": 6,
        "base_ac": 12,
        "ac_per_level": 0.5,
        "base_damage": 6,
        "damage_per_level": 1,
    },
    "elite-guard": {
        "name": "Elite Guard",
        "base_level": 3,
        "base_hp": 45,
        "hp_per_level": 8,
        "base_ac": 14,
        "ac_per_level": 0.5,
        "base_damage": 8,
        "damage_per_level": 1.5,
    },
}

_REQUIRED_TEMPLATE_KEYS = ("name", "captured_spawn", "guard_spawns")


def scale_guard_stats(template: dict, target_level: int) -> dict:
    """Guard stats for a party level; never scaled below the base level."""
    level_diff = max(0, target_level - template["base_level"])
    return {
        "hp": round(template["base_hp"] + template["hp_per_level"] * level_diff),
        "ac": round(template["base_ac"] + template["ac_per_level"] * level_diff),
        "damage": round(template["base_damage"] + template["damage_per_level"] * level_diff),
        "level": target_level,
    }


def load_jail_templates(path: Path | str) -> dict[str, dict]:
    """
    Load extra jail layouts from a YAML file keyed by config key.

    Raises:
        ConfigurationInvalid: unreadable file or a layout missing fields
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationInvalid(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationInvalid(str(path), "expected a mapping of jail templates")
    for key, template in data.items():
        missing = [k for k in _REQUIRED_TEMPLATE_KEYS if k not in (template or {})]
        if missing:
            raise ConfigurationInvalid(f"{path.name}:{key}", f"missing {', '.join(missing)}")
    return data


class JailSystem:
    """
    Jail scenes, guard assignment and prisoners.

    Requires a PatrolManager; state lives in the manager's global document.
    """

    def __init__(self, manager: "PatrolManager", templates_file: Path | str | None = None):
        self.manager = manager
        self.templates: dict[str, dict] = copy.deepcopy(JAIL_TEMPLATES)
        self.guard_templates: dict[str, dict] = copy.deepcopy(GUARD_TEMPLATES)
        if templates_file is not None:
            self.load_templates(templates_file)

    @property
    def ctx(self):
        return self.manager.ctx

    @property
    def _state(self):
        return self.manager.global_state

    def _save(self) -> None:
        self.manager.save_global()

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def load_templates(self, path: Path | str) -> list[str]:
        loaded = load_jail_templates(path)
        self.templates.update(loaded)
        logger.info(f"Loaded {len(loaded)} jail templates from {path}")
        return list(loaded)

    def register_guard_template(self, key: str, template: dict) -> None:
        self.guard_templates[key] = template

    def get_guard_template(self, key: str) -> dict:
        return self.guard_templates.get(key) or self.guard_templates["default-guard"]

    # -------------------------------------------------------------------------
    # Jail scenes
    # -------------------------------------------------------------------------

    def get_jail_scenes(self) -> list[JailScene]:
        return list(self._state.jail_scenes.values())

    def get_jail_scene(self, scene_id: str) -> JailScene | None:
        return self._state.jail_scenes.get(scene_id)

    def is_jail_scene(self, scene_id: str) -> bool:
        return scene_id in self._state.jail_scenes

    def prisoner_count(self, scene_id: str) -> int:
        return len(self.get_prisoners_in_jail(scene_id))

    def _require_jail(self, scene_id: str) -> JailScene:
        record = self.get_jail_scene(scene_id)
        if record is None:
            raise MissingReference("jail scene", scene_id)
        return record

    def create_jail_scene(self, config_key: str = "jail_1") -> JailScene:
        """
        Create (or return the existing) jail scene for a template.

        Raises:
            ValueError: unknown template key
        """
        template = self.templates.get(config_key)
        if template is None:
            raise ValueError(f"Unknown jail template: {config_key}")
        for record in self._state.jail_scenes.values():
            if record.config_key == config_key and self.ctx.world.get_scene(record.scene_id):
                return record

        scene = Scene(
            name=template["name"],
            width=template.get("width", 1000),
            height=template.get("height", 1000),
            grid_size=template.get("grid_size", 100),
            flags={
                "isHardcodedJail": True,
                "jailConfigKey": config_key,
                "jailSpawnPoint": template["captured_spawn"],
            },
        )
        self.ctx.world.create_scene(scene)

        for route in template.get("patrol_routes", []):
            for i, point in enumerate(route.get("waypoints", [])):
                self.manager.create_waypoint(
                    scene.id, point["x"], point["y"],
                    name=f"{route.get('name', 'Route')} {i + 1}",
                    tags=["jail"],
                )

        record = JailScene(scene_id=scene.id, config_key=config_key)
        self._state.jail_scenes[scene.id] = record
        self._save()
        self.ctx.bus.emit(EventType.JAIL_SCENE_CREATED, scene_id=scene.id, config_key=config_key)
        logger.info(f"Created jail scene {scene.name} ({scene.id})")
        return record

    def ensure_jail_scene(self, config_key: str | None = None) -> JailScene:
        """A jail scene to send prisoners to; rolls a template when none given."""
        if config_key is None:
            existing = [r for r in self.get_jail_scenes() if self.ctx.world.get_scene(r.scene_id)]
            if existing:
                return self.ctx.rng.choice(existing)
            config_key = self.ctx.rng.choice(sorted(self.templates))
        return self.create_jail_scene(config_key)

    def party_level(self) -> int:
        adapter = self.ctx.adapter
        levels = [
            adapter.get_actor_level(a)
            for a in self.ctx.world.get_actors()
            if adapter.is_player_actor(a)
        ]
        if not levels:
            return 1
        return max(1, round(sum(levels) / len(levels)))

    def prepare_jail_scene(
        self,
        scene_id: str,
        party_level: int | None = None,
        guard_template: str = "default-guard",
    ) -> dict:
        """Spawn scaled guards once per scene."""
        record = self._require_jail(scene_id)
        if record.prepared:
            return {"success": True, "already_prepared": True, "guards": []}

        template = self.templates.get(record.config_key, {})
        level = party_level or self.party_level()
        stats = scale_guard_stats(self.get_guard_template(guard_template), level)
        guard_actor_id = record.guard_actor_id or self.assign_guard(scene_id)

        guards = []
        for spawn in template.get("guard_spawns", []):
            token = self.ctx.world.create_token(Token(
                scene_id=scene_id,
                name=spawn.get("name", "Guard"),
                x=spawn["x"],
                y=spawn["y"],
                actor_id=guard_actor_id,
                disposition=TokenDisposition.HOSTILE,
                flags={
                    "isJailGuard": True,
                    "scaledStats": stats,
                    "templateKey": guard_template,
                    "targetLevel": level,
                },
            ))
            guards.append(token.id)

        record.prepared = True
        self._save()
        logger.info(f"Prepared jail {scene_id}: {len(guards)} guards at level {level}")
        return {"success": True, "guards": guards, "stats": stats}

    def reset_jail_scene(self, scene_id: str, reprepare: bool = False) -> dict:
        """Remove guard tokens so they respawn on the next capture."""
        record = self._require_jail(scene_id)
        removed = 0
        for token in self.ctx.world.get_tokens(scene_id):
            if token.flags.get("isJailGuard"):
                self.ctx.world.delete_token(token.id)
                removed += 1
        record.prepared = False
        self._save()
        self.ctx.bus.emit(EventType.JAIL_SCENE_RESET, scene_id=scene_id, removed=removed)
        if reprepare:
            self.prepare_jail_scene(scene_id)
        return {"success": True, "removed": removed}

    def delete_jail_scene(self, scene_id: str) -> dict:
        """Force-release the scene's prisoners, then remove the scene."""
        self._require_jail(scene_id)
        released = 0
        for prisoner in self.get_prisoners_in_jail(scene_id):
            if self.release_prisoner(prisoner.actor_id, return_to_original=True, clear_record=True)["success"]:
                released += 1

        for patrol in self.manager.get_patrols(scene_id):
            self.manager.delete_patrol(patrol.id)
        for waypoint in self.manager.get_waypoints(scene_id):
            self.manager.delete_waypoint(waypoint.id)
        self.manager.store.delete_scene(scene_id)
        self.ctx.world.delete_scene(scene_id)

        del self._state.jail_scenes[scene_id]
        self._save()
        self.ctx.bus.emit(EventType.JAIL_SCENE_DELETED, scene_id=scene_id, released=released)
        logger.info(f"Deleted jail scene {scene_id} ({released} prisoners released)")
        return {"success": True, "released": released}

    def delete_all_jail_scenes(self) -> int:
        count = 0
        for record in self.get_jail_scenes():
            self.delete_jail_scene(record.scene_id)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Guard cache
    # -------------------------------------------------------------------------

    def get_random_npc_actor(self, scene_id: str | None = None) -> Actor | None:
        """A random non-player actor. Never touches any guard assignment."""
        adapter = self.ctx.adapter
        npcs = [a for a in self.ctx.world.get_actors() if not adapter.is_player_actor(a)]
        if not npcs:
            return None
        return self.ctx.rng.choice(npcs)

    def assign_guard(self, scene_id: str) -> str | None:
        """Auto-assign a random guard unless the scene's guard is locked."""
        record = self._require_jail(scene_id)
        if record.locked:
            return record.guard_actor_id
        actor = self.get_random_npc_actor(scene_id)
        if actor is None:
            return record.guard_actor_id
        record.guard_actor_id = actor.id
        self._save()
        self.ctx.bus.emit(EventType.GUARD_ASSIGNED, scene_id=scene_id, actor_id=actor.id, locked=False)
        return actor.id

    def set_scene_guard_actor(self, scene_id: str, actor_id: str, lock: bool = True) -> JailScene:
        """Manual guard choice; locked by default."""
        record = self._require_jail(scene_id)
        if self.ctx.world.get_actor(actor_id) is None:
            raise MissingReference("actor", actor_id)
        record.guard_actor_id = actor_id
        record.locked = lock
        self._save()
        self.ctx.bus.emit(EventType.GUARD_ASSIGNED, scene_id=scene_id, actor_id=actor_id, locked=lock)
        return record

    def clear_scene_guard_actor(self, scene_id: str) -> JailScene:
        record = self._require_jail(scene_id)
        record.guard_actor_id = None
        record.locked = False
        self._save()
        return record

    def get_scene_guard_actor(self, scene_id: str) -> str | None:
        record = self.get_jail_scene(scene_id)
        return record.guard_actor_id if record else None

    def set_scene_guard_lock(self, scene_id: str, locked: bool) -> JailScene:
        record = self._require_jail(scene_id)
        record.locked = locked
        self._save()
        return record

    # -------------------------------------------------------------------------
    # Prisoners
    # -------------------------------------------------------------------------

    def _next_cell(self, scene_id: str, template: dict) -> tuple[int, dict]:
        cells = template.get("cells") or []
        taken = {p.cell_index for p in self.get_prisoners_in_jail(scene_id)}
        for index, cell in enumerate(cells):
            if index not in taken:
                return index, cell
        return len(taken), template.get("captured_spawn", {"x": 500, "y": 500})

    def send_to_jail(
        self,
        actor_id: str,
        jail_scene_id: str | None = None,
        duration: int | None = _UNSET,
        captured_by: str | None = None,
        token_id: str | None = None,
    ) -> dict:
        """
        Jail an actor.

        `duration` is in minutes; omitted means `jailDefaultDuration`,
        0 or None means indefinite.
        """
        if not self.ctx.settings.jail_enabled:
            return {"success": False, "error": "jail is disabled"}
        world = self.ctx.world
        actor = world.get_actor(actor_id)
        if actor is None:
            return {"success": False, "error": str(MissingReference("actor", actor_id))}
        if self.is_prisoner(actor_id):
            # The first record holds where to send them back
            return {"success": False, "reason": "already_jailed", "error": f"{actor.name} is already jailed"}

        record = self.get_jail_scene(jail_scene_id) if jail_scene_id else self.ensure_jail_scene()
        if record is None or world.get_scene(record.scene_id) is None:
            return {"success": False, "error": str(MissingReference("jail scene", jail_scene_id))}

        token = world.get_token(token_id) if token_id else world.find_token_for_actor(actor_id)
        original_scene_id = token.scene_id if token else None
        original_position = Point(x=token.x, y=token.y) if token else None

        self.prepare_jail_scene(record.scene_id)
        template = self.templates.get(record.config_key, {})
        cell_index, cell = self._next_cell(record.scene_id, template)

        if token is not None:
            world.update_token(token.id, scene_id=record.scene_id, x=cell["x"], y=cell["y"], hidden=False)
        else:
            token = world.create_token(Token(
                scene_id=record.scene_id,
                name=actor.name,
                x=cell["x"],
                y=cell["y"],
                actor_id=actor_id,
                player_owned=actor.is_player,
                disposition=TokenDisposition.FRIENDLY,
            ))

        now = self.ctx.now()
        minutes = self.ctx.settings.jail_default_duration if duration is _UNSET else duration
        prisoner = Prisoner(
            actor_id=actor_id,
            actor_name=actor.name,
            token_id=token.id,
            scene_id=record.scene_id,
            original_scene_id=original_scene_id,
            original_position=original_position,
            cell_index=cell_index,
            captured_at=now,
            captured_by=captured_by,
            release_time=now + minutes * 60 if minutes else None,
        )
        self._state.prisoners[actor_id] = prisoner
        self._save()
        self.ctx.bus.emit(
            EventType.PRISONER_JAILED,
            scene_id=record.scene_id,
            actor_id=actor_id,
            captured_by=captured_by,
        )
        self.ctx.notifier.info(f"{actor.name} has been sent to jail")
        return {"success": True, "prisoner": prisoner, "jail_scene_id": record.scene_id}

    def release_prisoner(
        self,
        actor_id: str,
        return_to_original: bool = True,
        clear_record: bool = False,
    ) -> dict:
        prisoner = self._state.prisoners.get(actor_id)
        if prisoner is None or not prisoner.jailed:
            return {"success": False, "error": f"{actor_id} is not jailed"}

        prisoner.jailed = False
        prisoner.release_time = None
        if return_to_original and prisoner.original_scene_id and prisoner.original_position:
            token_id = prisoner.token_id
            token = self.ctx.world.get_token(token_id) if token_id else None
            if token is not None:
                self.ctx.world.update_token(
                    token.id,
                    scene_id=prisoner.original_scene_id,
                    x=prisoner.original_position.x,
                    y=prisoner.original_position.y,
                )
        if clear_record:
            del self._state.prisoners[actor_id]
        self._save()
        self.ctx.bus.emit(EventType.PRISONER_RELEASED, scene_id=prisoner.scene_id, actor_id=actor_id)
        self.ctx.notifier.info(f"{prisoner.actor_name or actor_id} has been released")
        return {"success": True, "actor_id": actor_id}

    def release_all_prisoners(self) -> int:
        count = 0
        for prisoner in self.get_prisoners():
            if self.release_prisoner(prisoner.actor_id, return_to_original=True, clear_record=True)["success"]:
                count += 1
        return count

    def get_prisoners(self) -> list[Prisoner]:
        """Prisoners still jailed."""
        return [p for p in self._state.prisoners.values() if p.jailed]

    def get_prisoners_in_jail(self, scene_id: str) -> list[Prisoner]:
        return [p for p in self.get_prisoners() if p.scene_id == scene_id]

    def get_prisoner(self, actor_id: str) -> Prisoner | None:
        return self._state.prisoners.get(actor_id)

    def is_prisoner(self, actor_id: str) -> bool:
        prisoner = self._state.prisoners.get(actor_id)
        return prisoner is not None and prisoner.jailed

    def time_remaining(self, actor_id: str) -> str:
        prisoner = self._state.prisoners.get(actor_id)
        if prisoner is None:
            return "Released"
        return prisoner.time_remaining(self.ctx.now())

    def detach_patrol(self, patrol_id: str) -> None:
        """Forget a deleted patrol in prisoner records."""
        changed = False
        for prisoner in self._state.prisoners.values():
            if prisoner.captured_by == patrol_id:
                prisoner.captured_by = None
                changed = True
        if changed:
            self._save()

    # -------------------------------------------------------------------------
    # Release / Escape
    # -------------------------------------------------------------------------

    def process_releases(self, now: float | None = None) -> list[str]:
        """Release prisoners whose sentence ran out."""
        now = self.ctx.now() if now is None else now
        released = []
        for prisoner in self.get_prisoners():
            if prisoner.release_time is not None and now >= prisoner.release_time:
                self.release_prisoner(prisoner.actor_id, return_to_original=True)
                released.append(prisoner.actor_id)
        return released

    def attempt_escape(self, actor_id: str, modifier: int | None = None) -> dict:
        """DC `jailEscapeDC` check; failure only records the attempt."""
        if not self.ctx.settings.jail_escape_enabled:
            return {"success": False, "error": "escapes are disabled"}
        prisoner = self._state.prisoners.get(actor_id)
        if prisoner is None or not prisoner.jailed:
            return {"success": False, "error": f"{actor_id} is not jailed"}

        if modifier is None:
            actor = self.ctx.world.get_actor(actor_id)
            modifier = self.ctx.adapter.get_actor_level(actor) // 2 if actor else 0
        roll = roll_check(
            self.ctx.settings.jail_escape_dc,
            modifier=modifier,
            label="jail escape",
            rng=self.ctx.rng,
        )
        prisoner.escape_attempts += 1
        prisoner.last_escape_check = self.ctx.now()
        self._save()

        if roll.success:
            self.release_prisoner(actor_id, return_to_original=True)
            self.ctx.bus.emit(EventType.PRISONER_ESCAPED, scene_id=prisoner.scene_id, actor_id=actor_id)
            self.ctx.notifier.warn(f"{prisoner.actor_name or actor_id} escaped from jail ({roll.narrative})")
        return {"success": True, "escaped": roll.success, "roll": roll.to_dict()}

    def process_escapes(self, now: float | None = None) -> list[str]:
        """Periodic escape checks every `jailEscapeInterval` seconds."""
        if not self.ctx.settings.jail_escape_enabled:
            return []
        now = self.ctx.now() if now is None else now
        interval = self.ctx.settings.jail_escape_interval
        escaped = []
        for prisoner in self.get_prisoners():
            last = prisoner.last_escape_check if prisoner.last_escape_check is not None else prisoner.captured_at
            if now - last < interval:
                continue
            result = self.attempt_escape(prisoner.actor_id)
            if result.get("escaped"):
                escaped.append(prisoner.actor_id)
        return escaped
