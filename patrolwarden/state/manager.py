"""
Patrol lifecycle management.

Owns patrol and waypoint CRUD, the run-state machine
(IDLE -> ACTIVE <-> PAUSED, stop -> IDLE), bulk operations and
export/import. Game systems hang off the manager and are created lazily.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from pydantic import ValidationError

from ..errors import ConfigurationInvalid, MissingReference
from .event_bus import EventType
from .schema import (
    AlertState,
    ExportDocument,
    ExportScene,
    GlobalState,
    PATROL_COLORS,
    Patrol,
    PatrolState,
    SceneState,
    Waypoint,
    generate_id,
)
from .store import JsonPatrolStore, PatrolStore

if TYPE_CHECKING:
    from ..context import PatrolContext

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"


class PatrolManager:
    """
    Manages patrols, waypoints and their persistence.

    Storage is delegated to a PatrolStore implementation:
    - JsonPatrolStore for production (file-based)
    - MemoryPatrolStore for testing (in-memory)
    """

    def __init__(self, ctx: "PatrolContext", store: PatrolStore | Path | str = "patrol_data"):
        """
        Args:
            ctx: Explicit context (settings, world, bus, collaborators)
            store: PatrolStore instance, or path for JsonPatrolStore
        """
        self.ctx = ctx
        if isinstance(store, (Path, str)):
            self.store = JsonPatrolStore(store)
        else:
            self.store = store

        self._scenes: dict[str, SceneState] = {}
        for scene_id in self.store.list_scenes():
            state = self.store.load_scene(scene_id)
            if state is not None:
                self._scenes[scene_id] = state
        self.global_state: GlobalState = self.store.load_global()

        # Runtime never survives a restart
        for patrol in self.all_patrols():
            if patrol.state != PatrolState.IDLE:
                patrol.state = PatrolState.IDLE
                patrol.alert_state = AlertState.IDLE
                patrol.current_waypoint_index = 0

        self._scheduler = None
        self._detection = None
        self._capture = None
        self._combat = None
        self._jail = None
        self._automation = None
        self._reinforcement = None
        self._runner = None

        ctx.world.on_token_deleted(self._on_token_deleted)

    # -------------------------------------------------------------------------
    # Systems (lazy)
    # -------------------------------------------------------------------------

    @property
    def scheduler(self):
        """Waypoint/blink scheduler."""
        if self._scheduler is None:
            from ..systems.scheduler import PatrolScheduler
            self._scheduler = PatrolScheduler(self)
        return self._scheduler

    @property
    def detection(self):
        if self._detection is None:
            from ..systems.detection import DetectionEngine
            self._detection = DetectionEngine(self)
        return self._detection

    @property
    def capture(self):
        if self._capture is None:
            from ..systems.capture import CaptureSystem
            self._capture = CaptureSystem(self)
        return self._capture

    @property
    def combat(self):
        if self._combat is None:
            from ..systems.combat import CombatSystem
            self._combat = CombatSystem(self)
        return self._combat

    @property
    def jail(self):
        if self._jail is None:
            from ..systems.jail import JailSystem
            self._jail = JailSystem(self)
        return self._jail

    @property
    def automation(self):
        if self._automation is None:
            from ..systems.automation import AutomationSystem
            self._automation = AutomationSystem(self)
        return self._automation

    @property
    def reinforcement(self):
        if self._reinforcement is None:
            from ..systems.reinforcement import ReinforcementSystem
            self._reinforcement = ReinforcementSystem(self)
        return self._reinforcement

    @property
    def runner(self):
        """Tick loop driving every active patrol."""
        if self._runner is None:
            from ..systems.runner import PatrolRunner
            self._runner = PatrolRunner(self)
        return self._runner

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _scene_state(self, scene_id: str) -> SceneState:
        if scene_id not in self._scenes:
            self._scenes[scene_id] = SceneState(scene_id=scene_id)
        return self._scenes[scene_id]

    def save_scene(self, scene_id: str) -> None:
        state = self._scene_state(scene_id)
        state.updated_at = datetime.now()
        self.store.save_scene(state)

    def save_global(self) -> None:
        self.store.save_global(self.global_state)

    # -------------------------------------------------------------------------
    # Patrol CRUD
    # -------------------------------------------------------------------------

    def all_patrols(self) -> list[Patrol]:
        return [p for state in self._scenes.values() for p in state.patrols]

    def create_patrol(self, data: dict[str, Any] | None = None, **fields) -> Patrol:
        """
        Create a patrol from a data dict.

        Unset movement/detection fields take the global defaults.
        Unknown waypoint ids are dropped with a warning.

        Raises:
            ConfigurationInvalid: data fails validation
        """
        settings = self.ctx.settings
        payload = {
            "mode": settings.default_patrol_mode,
            "blink_pattern": settings.default_blink_pattern,
            "appear_duration": settings.default_appear_duration,
            "disappear_duration": settings.default_disappear_duration,
            "timing_variance": settings.timing_variance,
            "detection_action": settings.detection_trigger,
            "color": PATROL_COLORS[len(self.all_patrols()) % len(PATROL_COLORS)],
        }
        payload.update(data or {})
        payload.update(fields)
        for key in ("id", "state", "alert_state", "current_waypoint_index"):
            payload.pop(key, None)

        try:
            patrol = Patrol.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationInvalid("patrol", str(exc)) from exc

        state = self._scene_state(patrol.scene_id)
        known = [w for w in patrol.waypoint_ids if state.get_waypoint(w)]
        if len(known) != len(patrol.waypoint_ids):
            self.ctx.warn(f"Patrol '{patrol.name}': dropped unknown waypoints")
            patrol.waypoint_ids = known

        state.patrols.append(patrol)
        self.save_scene(patrol.scene_id)
        self.ctx.bus.emit(EventType.PATROL_CREATED, scene_id=patrol.scene_id, patrol_id=patrol.id)
        logger.info(f"Created patrol {patrol.name} ({patrol.id})")
        return patrol

    def get_patrol(self, patrol_id: str) -> Patrol | None:
        for state in self._scenes.values():
            patrol = state.get_patrol(patrol_id)
            if patrol is not None:
                return patrol
        return None

    def require_patrol(self, patrol_id: str) -> Patrol:
        patrol = self.get_patrol(patrol_id)
        if patrol is None:
            raise MissingReference("patrol", patrol_id)
        return patrol

    def get_patrols(self, scene_id: str | None = None) -> list[Patrol]:
        if scene_id is None:
            return self.all_patrols()
        state = self._scenes.get(scene_id)
        return list(state.patrols) if state else []

    def get_patrols_by_tag(self, tag: str) -> list[Patrol]:
        return [p for p in self.all_patrols() if tag in p.tags]

    def get_patrol_for_token(self, token_id: str) -> Patrol | None:
        for patrol in self.all_patrols():
            if patrol.token_id == token_id:
                return patrol
        return None

    def update_patrol(self, patrol_id: str, **changes) -> Patrol:
        """
        Apply configuration edits.

        Run state is owned by the lifecycle methods and cannot be edited here.
        """
        patrol = self.require_patrol(patrol_id)
        for key in ("id", "scene_id", "state", "alert_state"):
            changes.pop(key, None)
        data = patrol.model_dump()
        data.update(changes)
        try:
            updated = Patrol.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationInvalid("patrol", str(exc)) from exc

        for name in changes:
            setattr(patrol, name, getattr(updated, name))
        patrol.clamp_index()
        self.scheduler.forget_cursor(patrol)
        if patrol.state != PatrolState.IDLE and len(patrol.waypoint_ids) < 2:
            self.ctx.warn(f"Patrol '{patrol.name}' stopped: fewer than 2 waypoints")
            self.stop_patrol(patrol.id)
            return patrol
        self.save_scene(patrol.scene_id)
        self.ctx.bus.emit(
            EventType.PATROL_UPDATED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            state=patrol.state.value,
            changed=sorted(changes),
        )
        return patrol

    def delete_patrol(self, patrol_id: str) -> bool:
        """Stop and remove a patrol, detaching it from jail records."""
        patrol = self.get_patrol(patrol_id)
        if patrol is None:
            return False
        if patrol.state != PatrolState.IDLE:
            self.stop_patrol(patrol_id)
        self.scheduler.cancel(patrol)
        self.detection.clear(patrol.id, cooldowns=True)
        self.jail.detach_patrol(patrol.id)

        state = self._scene_state(patrol.scene_id)
        state.patrols = [p for p in state.patrols if p.id != patrol_id]
        self.save_scene(patrol.scene_id)
        self.ctx.bus.emit(EventType.PATROL_DELETED, scene_id=patrol.scene_id, patrol_id=patrol_id)
        logger.info(f"Deleted patrol {patrol.name} ({patrol_id})")
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def active_count(self) -> int:
        return sum(1 for p in self.all_patrols() if p.state == PatrolState.ACTIVE)

    def _start_refusal(self, patrol: Patrol) -> str | None:
        reason = patrol.startable_reason()
        if reason:
            return reason
        if self.ctx.world.get_token(patrol.token_id) is None:
            return str(MissingReference("token", patrol.token_id))
        state = self._scene_state(patrol.scene_id)
        missing = [w for w in patrol.waypoint_ids if state.get_waypoint(w) is None]
        if missing:
            return str(MissingReference("waypoint", missing[0]))
        if patrol.state == PatrolState.IDLE and self.active_count() >= self.ctx.settings.max_active_patrols:
            return f"maximum of {self.ctx.settings.max_active_patrols} active patrols reached"
        return None

    def _after_transition(self, patrol: Patrol, previous: PatrolState) -> dict:
        self.save_patrol(patrol.id)
        self.ctx.bus.emit(
            EventType.PATROL_UPDATED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            state=patrol.state.value,
            previous=previous.value,
        )
        return {"success": True, "patrol_id": patrol.id, "state": patrol.state.value}

    def start_patrol(self, patrol_id: str) -> dict:
        """IDLE/PAUSED -> ACTIVE. A no-op for an already active patrol."""
        patrol = self.require_patrol(patrol_id)
        if patrol.state == PatrolState.ACTIVE:
            return {"success": False, "reason": "already_active", "patrol_id": patrol.id}

        reason = self._start_refusal(patrol)
        if reason:
            self.ctx.warn(f"Cannot start patrol '{patrol.name}': {reason}")
            return {"success": False, "error": reason, "patrol_id": patrol.id}

        previous = patrol.state
        patrol.state = PatrolState.ACTIVE
        if previous == PatrolState.PAUSED:
            self.scheduler.resume(patrol)
        else:
            self.scheduler.begin(patrol)
        return self._after_transition(patrol, previous)

    def pause_patrol(self, patrol_id: str) -> dict:
        """ACTIVE -> PAUSED, keeping position and timers."""
        patrol = self.require_patrol(patrol_id)
        if patrol.state != PatrolState.ACTIVE:
            return {"success": False, "error": f"patrol is {patrol.state.value}", "patrol_id": patrol.id}
        patrol.state = PatrolState.PAUSED
        self.scheduler.freeze(patrol)
        return self._after_transition(patrol, PatrolState.ACTIVE)

    def resume_patrol(self, patrol_id: str) -> dict:
        """PAUSED -> ACTIVE."""
        patrol = self.require_patrol(patrol_id)
        if patrol.state != PatrolState.PAUSED:
            return {"success": False, "error": f"patrol is {patrol.state.value}", "patrol_id": patrol.id}
        return self.start_patrol(patrol_id)

    def stop_patrol(self, patrol_id: str) -> dict:
        """
        Any state -> IDLE.

        Resets the cursor and alert, cancels movement and detection state.
        Pending approvals for the patrol stay queued.
        """
        patrol = self.require_patrol(patrol_id)
        previous = patrol.state
        self.scheduler.cancel(patrol)
        self.detection.clear(patrol.id)
        patrol.state = PatrolState.IDLE
        patrol.current_waypoint_index = 0
        patrol.alert_state = AlertState.IDLE
        return self._after_transition(patrol, previous)

    def save_patrol(self, patrol_id: str) -> None:
        patrol = self.require_patrol(patrol_id)
        self.save_scene(patrol.scene_id)

    def reset_alert(self, patrol_id: str) -> dict:
        patrol = self.require_patrol(patrol_id)
        patrol.alert_state = AlertState.IDLE
        self.detection.clear(patrol.id)
        return self._after_transition(patrol, patrol.state)

    def set_alert_state(self, patrol_id: str, alert_state: AlertState) -> dict:
        """Detection escalation step; persisted and announced like any transition."""
        patrol = self.require_patrol(patrol_id)
        previous = patrol.alert_state
        patrol.alert_state = alert_state
        self.save_patrol(patrol.id)
        self.ctx.bus.emit(
            EventType.PATROL_UPDATED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            state=patrol.state.value,
            previous=patrol.state.value,
            alert=alert_state.value,
            previous_alert=previous.value,
        )
        return {"success": True, "patrol_id": patrol.id, "alert": alert_state.value}

    # -------------------------------------------------------------------------
    # Bulk operations
    # -------------------------------------------------------------------------

    def _apply_all(self, operation: Callable[[str], dict], scene_id: str | None) -> dict:
        succeeded: list[str] = []
        failed: list[dict] = []
        for patrol in self.get_patrols(scene_id):
            try:
                result = operation(patrol.id)
            except Exception as e:
                logger.warning(f"Bulk operation failed for {patrol.id}: {e}")
                failed.append({"id": patrol.id, "error": str(e)})
                continue
            if result.get("success"):
                succeeded.append(patrol.id)
            elif result.get("reason") != "already_active":
                failed.append({"id": patrol.id, "error": result.get("error", "")})
        return {"succeeded": succeeded, "failed": failed}

    def start_all(self, scene_id: str | None = None) -> dict:
        return self._apply_all(self.start_patrol, scene_id)

    def stop_all(self, scene_id: str | None = None) -> dict:
        result = self._apply_all(self.stop_patrol, scene_id)
        result["despawned"] = self.reinforcement.despawn_all(scene_id)
        # Telegraphs are not tracked per scene; clear them once nothing moves
        if not any(p.state != PatrolState.IDLE for p in self.all_patrols()):
            self.ctx.telegraph.cancel_all()
        return result

    def pause_all(self, scene_id: str | None = None) -> dict:
        return self._apply_all(
            lambda pid: self.pause_patrol(pid)
            if self.require_patrol(pid).state == PatrolState.ACTIVE
            else {"success": False, "reason": "already_active"},
            scene_id,
        )

    def resume_all(self, scene_id: str | None = None) -> dict:
        return self._apply_all(
            lambda pid: self.resume_patrol(pid)
            if self.require_patrol(pid).state == PatrolState.PAUSED
            else {"success": False, "reason": "already_active"},
            scene_id,
        )

    def reset_all_alerts(self, scene_id: str | None = None) -> dict:
        return self._apply_all(self.reset_alert, scene_id)

    # -------------------------------------------------------------------------
    # Waypoints
    # -------------------------------------------------------------------------

    def create_waypoint(self, scene_id: str, x: float, y: float, **fields) -> Waypoint:
        try:
            waypoint = Waypoint(scene_id=scene_id, x=x, y=y, **fields)
        except ValidationError as exc:
            raise ConfigurationInvalid("waypoint", str(exc)) from exc
        self._scene_state(scene_id).waypoints.append(waypoint)
        self.save_scene(scene_id)
        self.ctx.bus.emit(EventType.WAYPOINT_CHANGED, scene_id=scene_id, waypoint_id=waypoint.id, action="created")
        return waypoint

    def get_waypoint(self, waypoint_id: str) -> Waypoint | None:
        for state in self._scenes.values():
            waypoint = state.get_waypoint(waypoint_id)
            if waypoint is not None:
                return waypoint
        return None

    def get_waypoints(self, scene_id: str) -> list[Waypoint]:
        state = self._scenes.get(scene_id)
        return list(state.waypoints) if state else []

    def get_patrol_waypoints(self, patrol: Patrol) -> list[Waypoint]:
        """The patrol's waypoints in cursor order (unresolvable ids skipped)."""
        state = self._scene_state(patrol.scene_id)
        return [w for w in (state.get_waypoint(i) for i in patrol.waypoint_ids) if w is not None]

    def get_unassigned_waypoints(self, scene_id: str) -> list[Waypoint]:
        used = {w for p in self.get_patrols(scene_id) for w in p.waypoint_ids}
        return [w for w in self.get_waypoints(scene_id) if w.id not in used]

    def update_waypoint(self, waypoint_id: str, **changes) -> Waypoint:
        waypoint = self.get_waypoint(waypoint_id)
        if waypoint is None:
            raise MissingReference("waypoint", waypoint_id)
        changes.pop("id", None)
        changes.pop("scene_id", None)
        data = waypoint.model_dump()
        data.update(changes)
        try:
            updated = Waypoint.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationInvalid("waypoint", str(exc)) from exc
        for name in changes:
            setattr(waypoint, name, getattr(updated, name))
        self.save_scene(waypoint.scene_id)
        self.ctx.bus.emit(EventType.WAYPOINT_CHANGED, scene_id=waypoint.scene_id, waypoint_id=waypoint.id, action="updated")
        return waypoint

    def delete_waypoint(self, waypoint_id: str) -> bool:
        """Remove a waypoint and detach it from every patrol."""
        waypoint = self.get_waypoint(waypoint_id)
        if waypoint is None:
            return False
        for patrol in self.all_patrols():
            if waypoint_id in patrol.waypoint_ids:
                self.remove_waypoint_from_patrol(patrol.id, waypoint_id)
        state = self._scene_state(waypoint.scene_id)
        state.waypoints = [w for w in state.waypoints if w.id != waypoint_id]
        self.save_scene(waypoint.scene_id)
        self.ctx.bus.emit(EventType.WAYPOINT_CHANGED, scene_id=waypoint.scene_id, waypoint_id=waypoint_id, action="deleted")
        return True

    def add_waypoint_to_patrol(self, patrol_id: str, waypoint_id: str, index: int | None = None) -> Patrol:
        patrol = self.require_patrol(patrol_id)
        if self._scene_state(patrol.scene_id).get_waypoint(waypoint_id) is None:
            raise MissingReference("waypoint", waypoint_id)
        if index is None:
            patrol.waypoint_ids.append(waypoint_id)
        else:
            patrol.waypoint_ids.insert(index, waypoint_id)
            if index <= patrol.current_waypoint_index and len(patrol.waypoint_ids) > 1:
                patrol.current_waypoint_index += 1
        self.save_scene(patrol.scene_id)
        return patrol

    def remove_waypoint_from_patrol(self, patrol_id: str, waypoint_id: str) -> Patrol:
        """Drop every occurrence of a waypoint; stops the patrol below 2."""
        patrol = self.require_patrol(patrol_id)
        kept: list[str] = []
        for position, wid in enumerate(patrol.waypoint_ids):
            if wid == waypoint_id:
                if position < patrol.current_waypoint_index:
                    patrol.current_waypoint_index -= 1
                continue
            kept.append(wid)
        patrol.waypoint_ids = kept
        patrol.clamp_index()
        self.scheduler.forget_cursor(patrol)
        if patrol.state != PatrolState.IDLE and len(kept) < 2:
            self.ctx.warn(f"Patrol '{patrol.name}' stopped: fewer than 2 waypoints")
            self.stop_patrol(patrol.id)
        else:
            self.save_scene(patrol.scene_id)
        return patrol

    # -------------------------------------------------------------------------
    # Token hooks
    # -------------------------------------------------------------------------

    def _on_token_deleted(self, token_id: str) -> None:
        patrol = self.get_patrol_for_token(token_id)
        if patrol is None:
            return
        if patrol.state != PatrolState.IDLE:
            self.stop_patrol(patrol.id)
        patrol.token_id = None
        self.save_scene(patrol.scene_id)
        logger.info(f"Token {token_id} deleted; patrol {patrol.name} detached")

    # -------------------------------------------------------------------------
    # Export / Import
    # -------------------------------------------------------------------------

    def export_patrols(self, scene_id: str) -> dict:
        """Export document: {version, scene, exportedAt, patrols, waypoints}."""
        state = self._scene_state(scene_id)
        scene = self.ctx.world.get_scene(scene_id)
        document = ExportDocument(
            version=EXPORT_VERSION,
            scene=ExportScene(id=scene_id, name=scene.name if scene else ""),
            exported_at=datetime.now(),
            patrols=[p.model_copy(deep=True) for p in state.patrols],
            waypoints=[w.model_copy(deep=True) for w in state.waypoints],
        )
        return document.model_dump(mode="json", by_alias=True)

    def import_patrols(
        self,
        data: dict,
        scene_id: str | None = None,
        replace: bool = False,
        import_waypoints: bool = True,
    ) -> dict:
        """
        Import an export document.

        Waypoints get fresh ids (patrol references remapped); patrols get
        fresh ids, no token and IDLE state.

        Raises:
            ConfigurationInvalid: the document does not validate
        """
        try:
            document = ExportDocument.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationInvalid("import", str(exc)) from exc

        target = scene_id or document.scene.id
        state = self._scene_state(target)

        if replace:
            for patrol in list(state.patrols):
                self.delete_patrol(patrol.id)
            if import_waypoints:
                for waypoint in list(state.waypoints):
                    self.delete_waypoint(waypoint.id)

        id_map: dict[str, str] = {}
        if import_waypoints:
            for waypoint in document.waypoints:
                copy = waypoint.clone(scene_id=target)
                id_map[waypoint.id] = copy.id
                state.waypoints.append(copy)

        for patrol in document.patrols:
            waypoint_ids = [id_map.get(w, w) for w in patrol.waypoint_ids]
            waypoint_ids = [w for w in waypoint_ids if state.get_waypoint(w) is not None]
            state.patrols.append(patrol.model_copy(update={
                "id": generate_id(),
                "scene_id": target,
                "token_id": None,
                "state": PatrolState.IDLE,
                "alert_state": AlertState.IDLE,
                "current_waypoint_index": 0,
                "waypoint_ids": waypoint_ids,
            }))

        self.save_scene(target)
        logger.info(f"Imported {len(document.patrols)} patrols into scene {target}")
        return {
            "success": True,
            "scene_id": target,
            "patrols": len(document.patrols),
            "waypoints": len(id_map),
        }

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self, scene_id: str | None = None) -> dict:
        patrols = self.get_patrols(scene_id)
        waypoints = (
            self.get_waypoints(scene_id)
            if scene_id
            else [w for s in self._scenes.values() for w in s.waypoints]
        )
        return {
            "total": len(patrols),
            "active": sum(1 for p in patrols if p.state == PatrolState.ACTIVE),
            "paused": sum(1 for p in patrols if p.state == PatrolState.PAUSED),
            "idle": sum(1 for p in patrols if p.state == PatrolState.IDLE),
            "alert": sum(1 for p in patrols if p.alert_state == AlertState.ALERT),
            "waypoints": len(waypoints),
            "pending": len(self.global_state.pending),
            "prisoners": sum(1 for p in self.global_state.prisoners.values() if p.jailed),
        }
