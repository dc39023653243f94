"""Tests for patrol CRUD and the run-state machine."""

import pytest

from conftest import SCENE_ID
from patrolwarden.errors import ConfigurationInvalid, MissingReference
from patrolwarden.state import (
    AlertState, EventType, MemoryPatrolStore, PatrolManager, PatrolState, Scene, Token, TriState,
)


class TestCreatePatrol:
    """Patrol creation."""

    def test_defaults_from_settings(self, manager, waypoints):
        """Unset fields take the global defaults."""
        patrol = manager.create_patrol(name="P", scene_id=SCENE_ID, waypoint_ids=[w.id for w in waypoints])
        assert patrol.blink_pattern.value == manager.ctx.settings.default_blink_pattern.value
        assert patrol.detection_action == manager.ctx.settings.detection_trigger
        assert patrol.state == PatrolState.IDLE
        assert manager.get_patrol(patrol.id) is patrol

    def test_unknown_waypoints_dropped(self, manager, waypoints, notifier):
        """Waypoint ids that do not exist on the scene are removed with a warning."""
        patrol = manager.create_patrol(scene_id=SCENE_ID, waypoint_ids=[waypoints[0].id, "ghost"])
        assert patrol.waypoint_ids == [waypoints[0].id]
        assert notifier.warnings

    def test_invalid_data_raises(self, manager):
        """Invalid fields surface as ConfigurationInvalid."""
        with pytest.raises(ConfigurationInvalid):
            manager.create_patrol(scene_id=SCENE_ID, mode="teleport-ish")

    def test_legacy_tristate_values(self, manager):
        """null/true/false overrides coerce to the three-variant enum."""
        patrol = manager.create_patrol(
            scene_id=SCENE_ID, automate_combat=None, automate_decisions=True, automate_require_approval=False
        )
        assert patrol.automate_combat == TriState.INHERIT
        assert patrol.automate_decisions == TriState.ENABLED
        assert patrol.automate_require_approval == TriState.DISABLED

    def test_created_event(self, manager, ctx):
        """Creation is announced."""
        patrol = manager.create_patrol(scene_id=SCENE_ID)
        events = ctx.bus.get_history(EventType.PATROL_CREATED)
        assert events[-1].data["patrol_id"] == patrol.id


class TestTransitions:
    """IDLE -> ACTIVE <-> PAUSED, stop -> IDLE."""

    def test_start_pause_resume_stop(self, manager, patrol):
        """The full lifecycle round trip."""
        assert manager.start_patrol(patrol.id)["success"]
        assert patrol.state == PatrolState.ACTIVE
        assert manager.pause_patrol(patrol.id)["success"]
        assert patrol.state == PatrolState.PAUSED
        assert manager.resume_patrol(patrol.id)["success"]
        assert patrol.state == PatrolState.ACTIVE
        assert manager.stop_patrol(patrol.id)["success"]
        assert patrol.state == PatrolState.IDLE

    def test_start_when_active_is_noop(self, manager, patrol):
        """Starting an active patrol fails quietly."""
        manager.start_patrol(patrol.id)
        result = manager.start_patrol(patrol.id)
        assert result["success"] is False
        assert result["reason"] == "already_active"
        assert patrol.state == PatrolState.ACTIVE

    def test_stop_resets_cursor_and_alert(self, manager, patrol):
        """Stop returns to waypoint 0 with a calm alert state."""
        manager.start_patrol(patrol.id)
        patrol.current_waypoint_index = 1
        patrol.alert_state = AlertState.ALERT
        manager.stop_patrol(patrol.id)
        assert patrol.current_waypoint_index == 0
        assert patrol.alert_state == AlertState.IDLE

    def test_alert_is_layered_on_active(self, manager, patrol):
        """ALERT is reported as status while the run state stays ACTIVE."""
        manager.start_patrol(patrol.id)
        patrol.alert_state = AlertState.ALERT
        assert patrol.state == PatrolState.ACTIVE
        assert patrol.status == PatrolState.ALERT

    def test_transitions_persist_and_emit(self, manager, patrol, memory_store, ctx):
        """Each transition saves the scene and emits an update."""
        manager.start_patrol(patrol.id)
        saved = memory_store.load_scene(SCENE_ID).get_patrol(patrol.id)
        assert saved.state == PatrolState.ACTIVE
        updates = ctx.bus.get_history(EventType.PATROL_UPDATED)
        assert updates[-1].data == {
            "patrol_id": patrol.id, "state": "active", "previous": "idle",
        }

    def test_start_refused_without_waypoints(self, manager, notifier):
        """Fewer than two waypoints cannot start."""
        patrol = manager.create_patrol(scene_id=SCENE_ID, token_id="t-guard")
        result = manager.start_patrol(patrol.id)
        assert result["success"] is False
        assert "2 waypoints" in result["error"]
        assert notifier.warnings

    def test_start_refused_when_token_missing(self, manager, waypoints):
        """A patrol whose token no longer exists cannot start."""
        patrol = manager.create_patrol(
            scene_id=SCENE_ID, token_id="t-gone", waypoint_ids=[w.id for w in waypoints]
        )
        result = manager.start_patrol(patrol.id)
        assert result["success"] is False
        assert "t-gone" in result["error"]

    def test_max_active_enforced(self, manager, patrol, waypoints, world):
        """Starts beyond maxActivePatrols are refused."""
        manager.ctx.settings.set_setting("maxActivePatrols", 1)
        world.create_token(Token(id="t-guard2", scene_id=SCENE_ID, name="Guard 2"))
        second = manager.create_patrol(
            scene_id=SCENE_ID, token_id="t-guard2", waypoint_ids=[w.id for w in waypoints]
        )
        assert manager.start_patrol(patrol.id)["success"]
        result = manager.start_patrol(second.id)
        assert result["success"] is False
        assert "maximum" in result["error"]

    def test_unknown_patrol_raises(self, manager):
        """Lifecycle calls on unknown ids raise MissingReference."""
        with pytest.raises(MissingReference):
            manager.start_patrol("nope")


class TestBulkOperations:
    """startAll/stopAll/pauseAll collect failures."""

    def test_failures_do_not_short_circuit(self, manager, patrol):
        """A patrol that cannot start does not block the others."""
        broken = manager.create_patrol(scene_id=SCENE_ID, name="Broken")
        result = manager.start_all()
        assert result["succeeded"] == [patrol.id]
        assert [f["id"] for f in result["failed"]] == [broken.id]

    def test_pause_and_stop_all(self, manager, patrol):
        """Bulk pause and stop reach every patrol."""
        manager.start_all()
        assert manager.pause_all()["succeeded"] == [patrol.id]
        assert patrol.state == PatrolState.PAUSED
        manager.stop_all()
        assert patrol.state == PatrolState.IDLE

    def test_stop_all_clears_telegraphs(self, manager, patrol, telegraph):
        """Once nothing patrols, no warning is left on the board."""
        manager.start_all()
        telegraph.show_telegraph((1000, 0), {"type": "blink", "duration": 1500})
        manager.stop_all()
        assert telegraph.requests == []

    def test_stopping_one_scene_keeps_running_telegraphs(self, manager, patrol, world, telegraph):
        """Telegraphs stay while a patrol on another scene still runs."""
        other = Scene(id="scene-2", name="Docks", grid_size=100)
        world.create_scene(other)
        world.create_token(Token(id="t-docks", scene_id="scene-2", name="Docker", actor_id="a-guard"))
        a = manager.create_waypoint("scene-2", 0, 0)
        b = manager.create_waypoint("scene-2", 500, 0)
        docks = manager.create_patrol(scene_id="scene-2", name="Dock Watch", token_id="t-docks",
                                      waypoint_ids=[a.id, b.id])
        manager.start_all()
        telegraph.show_telegraph((500, 0), {"type": "blink", "duration": 1500})
        manager.stop_all(SCENE_ID)
        assert docks.state == PatrolState.ACTIVE
        assert len(telegraph.requests) >= 1


class TestUpdateAndDelete:
    """Editing and removing patrols."""

    def test_update_cannot_touch_run_state(self, manager, patrol):
        """state is owned by the lifecycle methods."""
        manager.update_patrol(patrol.id, name="Renamed", state="active")
        assert patrol.name == "Renamed"
        assert patrol.state == PatrolState.IDLE

    def test_removing_waypoints_below_two_stops(self, manager, patrol, waypoints, notifier):
        """An active patrol left with one waypoint is stopped."""
        manager.start_patrol(patrol.id)
        manager.remove_waypoint_from_patrol(patrol.id, waypoints[1].id)
        assert patrol.waypoint_ids == [waypoints[0].id]
        assert patrol.state == PatrolState.IDLE
        assert any("fewer than 2" in w for w in notifier.warnings)

    def test_delete_waypoint_detaches(self, manager, patrol, waypoints):
        """Deleting a waypoint removes it from patrols using it."""
        manager.delete_waypoint(waypoints[0].id)
        assert waypoints[0].id not in patrol.waypoint_ids
        assert manager.get_waypoint(waypoints[0].id) is None

    def test_delete_patrol(self, manager, patrol, world, ctx):
        """A deleted patrol is stopped, removed and its token made visible."""
        manager.start_patrol(patrol.id)
        world.update_token("t-guard", hidden=True)
        assert manager.delete_patrol(patrol.id) is True
        assert manager.get_patrol(patrol.id) is None
        assert world.get_token("t-guard").hidden is False
        assert ctx.bus.get_history(EventType.PATROL_DELETED)
        assert manager.delete_patrol(patrol.id) is False

    def test_token_deletion_detaches_patrol(self, manager, patrol, world):
        """Removing the patrol token stops the patrol and clears the reference."""
        manager.start_patrol(patrol.id)
        world.delete_token("t-guard")
        assert patrol.state == PatrolState.IDLE
        assert patrol.token_id is None


class TestReload:
    """Runtime state does not survive a restart."""

    def test_reload_resets_to_idle(self, ctx, memory_store, patrol, manager):
        """A patrol saved ACTIVE loads as IDLE at waypoint 0."""
        manager.start_patrol(patrol.id)
        patrol.current_waypoint_index = 1
        manager.save_patrol(patrol.id)

        fresh = MemoryPatrolStore()
        fresh.scenes = {sid: state.model_copy(deep=True) for sid, state in memory_store.scenes.items()}
        reloaded = PatrolManager(ctx, fresh)
        copy = reloaded.get_patrol(patrol.id)
        assert copy.state == PatrolState.IDLE
        assert copy.current_waypoint_index == 0
        assert len(copy.waypoint_ids) == 2
