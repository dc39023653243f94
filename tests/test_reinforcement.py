"""Tests for alert reinforcements and encounter assistants."""

import pytest

from conftest import SCENE_ID
from patrolwarden.state import EventType, PatrolState
from patrolwarden.systems.reinforcement import boosted_stats


@pytest.fixture
def watching(manager, patrol, settings):
    """The Night Watch, started at the gate, with reinforcements on."""
    settings.set_setting("reinforcementsEnabled", True)
    manager.start_patrol(patrol.id)
    return patrol


def raise_alert(manager, patrol):
    manager.detection.check(patrol)
    return manager.detection.check(patrol)


class TestAlertReinforcements:
    """Guards called in when a patrol raises the alert."""

    def test_disabled_by_default(self, manager, patrol, world):
        manager.start_patrol(patrol.id)
        result = manager.reinforcement.on_alert(patrol, [world.get_token("t-hero")])
        assert result == {"success": False, "reason": "disabled"}
        assert manager.reinforcement.get_scheduled() == []

    def test_alert_schedules_spawn_at_other_waypoint(self, manager, watching, waypoints, telegraph, notifier, ctx):
        """The gate raised the alert, so help comes to the tower."""
        raise_alert(manager, watching)

        scheduled = manager.reinforcement.get_scheduled(SCENE_ID)
        assert [s.waypoint_id for s in scheduled] == [waypoints[1].id]
        position, options = telegraph.requests[-1]
        assert position == (1000, 0)
        assert options["type"] == "warning"
        assert options["duration"] == 2000
        assert "ALERT TRIGGERED! 1 reinforcements incoming!" in notifier.of_level("info")
        event = ctx.bus.get_history(EventType.REINFORCEMENTS_CALLED)[-1]
        assert event.data["token_id"] == "t-hero"
        assert event.data["waypoint_ids"] == [waypoints[1].id]

    def test_spawn_after_telegraph_then_despawn(self, manager, watching, world, clock, settings, ctx):
        raise_alert(manager, watching)

        clock.advance(1.5)
        assert manager.reinforcement.process()["spawned"] == []

        clock.advance(0.5)
        spawned = manager.reinforcement.process()["spawned"]
        assert len(spawned) == 1
        token = world.get_token(spawned[0])
        assert token.name.endswith("(Reinforcement)")
        assert (token.x, token.y) == (1000, 0)
        assert token.actor_id == "a-guard"
        assert token.flags["isReinforcement"] is True
        assert token.flags["sourcePatrolId"] == watching.id
        assert manager.reinforcement.is_reinforcement(token.id)

        clock.advance(settings.reinforcement_duration - 1)
        assert manager.reinforcement.process()["despawned"] == []
        clock.advance(1)
        assert manager.reinforcement.process()["despawned"] == [token.id]
        assert world.get_token(token.id) is None
        assert ctx.bus.get_history(EventType.REINFORCEMENT_DESPAWNED)[-1].data["token_id"] == token.id

    def test_cooldown(self, manager, watching, world, clock, notifier):
        """A scene calls for help once per cooldown; the GM can reset it."""
        hero = world.get_token("t-hero")
        assert manager.reinforcement.on_alert(watching, [hero])["success"] is True

        clock.advance(30)
        result = manager.reinforcement.on_alert(watching, [hero])
        assert result == {"success": False, "reason": "cooldown", "remaining": 60}
        assert manager.reinforcement.cooldown_remaining(SCENE_ID) == 60

        manager.reinforcement.reset_cooldown(SCENE_ID)
        assert manager.reinforcement.cooldown_remaining(SCENE_ID) == 0
        assert "Alert cooldown reset" in notifier.of_level("info")
        assert manager.reinforcement.on_alert(watching, [hero])["success"] is True

    def test_cooldown_expires(self, manager, watching, world, clock, settings):
        hero = world.get_token("t-hero")
        manager.reinforcement.on_alert(watching, [hero])
        clock.advance(settings.reinforcement_cooldown)
        assert manager.reinforcement.on_alert(watching, [hero])["success"] is True

    def test_no_waypoints(self, manager, watching, world, waypoints):
        """A disabled tower leaves nowhere to send help."""
        manager.update_waypoint(waypoints[1].id, disabled=True)
        result = manager.reinforcement.on_alert(watching, [world.get_token("t-hero")])
        assert result == {"success": False, "reason": "no_waypoints"}

    def test_idle_patrols_lend_no_waypoints(self, manager, watching, world):
        """Only waypoints of running patrols are used."""
        far = manager.create_waypoint(SCENE_ID, 1500, 500, name="Wall")
        manager.create_patrol(name="Day Shift", scene_id=SCENE_ID, waypoint_ids=[far.id])
        assert far.id not in [w.id for w in manager.reinforcement.available_waypoints(watching)]

    def test_despawn_all(self, manager, watching, world, clock):
        raise_alert(manager, watching)
        clock.advance(2)
        spawned = manager.reinforcement.process()["spawned"]
        assert manager.reinforcement.despawn_all(SCENE_ID) == 1
        assert world.get_token(spawned[0]) is None
        assert manager.reinforcement.get_active() == []

    def test_stop_all_removes_spawns(self, manager, watching, world, clock):
        """Stopping the scene clears spawned guards and drops pending spawns."""
        raise_alert(manager, watching)
        clock.advance(2)
        spawned = manager.reinforcement.process()["spawned"]

        manager.reinforcement.reset_cooldown(SCENE_ID)
        manager.reinforcement.on_alert(watching, [world.get_token("t-hero")])
        assert manager.reinforcement.get_scheduled(SCENE_ID)

        result = manager.stop_all(SCENE_ID)
        assert watching.state == PatrolState.IDLE
        assert result["despawned"] == 1
        assert world.get_token(spawned[0]) is None
        assert manager.reinforcement.get_scheduled() == []

    def test_runner_reports_spawns(self, manager, watching, clock):
        raise_alert(manager, watching)
        clock.advance(2)
        report = manager.runner.tick()
        assert len(report["spawned"]) == 1
        assert report["despawned"] == []


class TestAssistants:
    """Elite backup joining a fight."""

    @pytest.fixture
    def eager(self, watching, settings):
        settings.set_setting("assistantChance", 100)
        return watching

    def test_no_backup_when_chance_is_zero(self, manager, watching, world, settings):
        settings.set_setting("assistantChance", 0)
        result = manager.reinforcement.on_capture_start(watching, world.get_token("t-hero"))
        assert result == {"success": False, "reason": "no_backup"}

    def test_assistants_arrive_after_rounds(self, manager, eager, world, clock, telegraph, waypoints):
        """Backup is warned of once the round delay is over, then appears."""
        result = manager.reinforcement.on_capture_start(eager, world.get_token("t-hero"))
        assert result["success"] is True
        assert 1 <= result["count"] <= 2
        assert all(r in (1, 2) for r in result["rounds"])

        clock.advance(12)
        assert manager.reinforcement.process()["spawned"] == []
        warnings = [o for _, o in telegraph.requests if o.get("color") == "#ff6600"]
        assert len(warnings) == result["count"]

        clock.advance(1.5)
        spawned = manager.reinforcement.process()["spawned"]
        assert len(spawned) == result["count"]
        for token_id in spawned:
            token = world.get_token(token_id)
            assert token.name == "Elite Backup"
            assert (token.x, token.y) == (1000, 0)
            assert token.flags["isAssistant"] is True
            assert token.flags["scaledStats"]["level"] == 4

        # Assistants stay until removed
        clock.advance(600)
        assert manager.reinforcement.process()["despawned"] == []
        assert manager.reinforcement.despawn_all() == result["count"]

    def test_combat_reports_assistants(self, manager, eager, world):
        result = manager.combat.initiate_combat(eager, world.get_token("t-hero"))
        assert 1 <= result["assistants"] <= 2

    def test_adjacent_waypoints(self, manager, patrol, waypoints):
        """Neighbours of the cursor, not wrapping around."""
        extra = manager.create_waypoint(SCENE_ID, 1000, 800, name="Well")
        manager.update_patrol(patrol.id, waypoint_ids=[w.id for w in waypoints] + [extra.id])
        assert [w.name for w in manager.reinforcement.adjacent_waypoints(patrol)] == ["Tower"]
        patrol.current_waypoint_index = 1
        assert [w.name for w in manager.reinforcement.adjacent_waypoints(patrol)] == ["Gate", "Well"]

    def test_boosted_stats(self):
        """Elite guard at party level 4 with a 1.1 bonus."""
        template = {
            "base_level": 3, "base_hp": 45, "hp_per_level": 8, "base_ac": 14,
            "ac_per_level": 0.5, "base_damage": 8, "damage_per_level": 1.5,
        }
        assert boosted_stats(template, 4, 1.1) == {"hp": 58, "ac": 16, "damage": 10, "level": 4}
        assert boosted_stats(None, 2, 1.0) == {"hp": 50, "ac": 14, "damage": 10, "level": 2}
