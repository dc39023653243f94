"""Tests for sight checks and alert escalation."""

import pytest

from conftest import SCENE_ID
from patrolwarden.context import MemoryMacroRunner
from patrolwarden.errors import MissingReference
from patrolwarden.state import AlertState, EventType, Token, TokenDisposition
from patrolwarden.state.schema import Wall
from patrolwarden.systems.detection import is_friendly, segments_intersect


@pytest.fixture
def watching(manager, patrol):
    """The Night Watch, started and standing at the gate."""
    manager.start_patrol(patrol.id)
    return patrol


def candidate_ids(manager, patrol):
    return [t.id for t in manager.detection.find_candidates(patrol)]


class TestGeometry:
    """Pure helpers."""

    def test_crossing_segments(self):
        assert segments_intersect((0, 0), (10, 0), Wall(x1=5, y1=-5, x2=5, y2=5))

    def test_parallel_segments(self):
        assert not segments_intersect((0, 0), (10, 0), Wall(x1=0, y1=5, x2=10, y2=5))

    def test_touching_endpoint_counts(self):
        assert segments_intersect((0, 0), (10, 0), Wall(x1=10, y1=0, x2=10, y2=8))

    def test_friendliness(self, world):
        guard = world.get_token("t-guard")
        hero = world.get_token("t-hero")
        assert not is_friendly(guard, hero)
        hero.disposition = "neutral"
        assert is_friendly(guard, hero)


class TestCandidates:
    """Who the patrol can see."""

    def test_hostile_player_in_range(self, manager, watching):
        """The hero 1.5 squares away is seen."""
        assert candidate_ids(manager, watching) == ["t-hero"]

    def test_out_of_range(self, manager, watching, world):
        """Six squares is beyond the default five."""
        world.update_token("t-hero", x=600)
        assert candidate_ids(manager, watching) == []

    def test_waypoint_range_override(self, manager, watching, waypoints):
        """A waypoint's own range beats the global default."""
        manager.update_waypoint(waypoints[0].id, detection_range=1)
        assert candidate_ids(manager, watching) == []

    def test_hidden_ignored_unless_enabled(self, manager, watching, world, settings):
        """GM-hidden occupants need detectHiddenPlayers."""
        world.update_token("t-hero", hidden=True)
        assert candidate_ids(manager, watching) == []
        settings.set_setting("detectHiddenPlayers", True)
        assert candidate_ids(manager, watching) == ["t-hero"]

    def test_invisible_ignored_unless_enabled(self, manager, watching, world, settings):
        """Magically invisible occupants need detectInvisible."""
        world.update_token("t-hero", invisible=True)
        assert candidate_ids(manager, watching) == []
        settings.set_setting("detect_invisible", True)
        assert candidate_ids(manager, watching) == ["t-hero"]

    def test_npcs_need_setting(self, manager, watching, add_bandit, settings):
        """Non-player occupants are ignored unless detectNPCs is on."""
        add_bandit(x=100)
        assert candidate_ids(manager, watching) == ["t-hero"]
        settings.set_setting("detect_npcs", True)
        assert candidate_ids(manager, watching) == ["t-bandit", "t-hero"]

    def test_wall_blocks_ray_check(self, manager, watching, world, settings):
        """A wall between guard and hero blocks sight under the ray method."""
        world.get_scene(SCENE_ID).walls.append(Wall(x1=75, y1=-100, x2=75, y2=100))
        assert candidate_ids(manager, watching) == []
        settings.set_setting("sight_check_method", "radius")
        assert candidate_ids(manager, watching) == ["t-hero"]

    def test_vision_cone(self, manager, watching, waypoints):
        """A guard facing south with a 90 degree cone misses an occupant to the east."""
        manager.update_waypoint(waypoints[0].id, facing_direction=180, vision_angle=90)
        assert candidate_ids(manager, watching) == []
        manager.update_waypoint(waypoints[0].id, facing_direction=90)
        assert candidate_ids(manager, watching) == ["t-hero"]

    def test_cooldown_expires(self, manager, watching, clock, settings):
        """A resolved occupant is ignored for detectionCooldown seconds."""
        manager.detection.mark_resolved(watching.id, "t-hero")
        clock.advance(settings.detection_cooldown - 1)
        assert candidate_ids(manager, watching) == []
        clock.advance(1)
        assert candidate_ids(manager, watching) == ["t-hero"]

    def test_missing_patrol_token(self, manager, watching, world):
        del world.tokens["t-guard"]
        with pytest.raises(MissingReference):
            manager.detection.find_candidates(watching)


class TestEscalation:
    """IDLE -> SUSPICIOUS -> ALERT."""

    def test_two_stage_alert(self, manager, watching, notifier, ctx):
        """The first glimpse only raises suspicion; the second fires once."""
        detection = manager.detection
        assert detection.check(watching) == []
        assert watching.alert_state == AlertState.SUSPICIOUS

        results = detection.check(watching)
        assert watching.alert_state == AlertState.ALERT
        assert results == [{"success": True, "action": "notify", "token_id": "t-hero"}]
        assert notifier.of_level("gm") == ["Night Watch spotted Hero"]
        assert ctx.bus.get_history(EventType.DETECTION_ALERT)[-1].data["token_id"] == "t-hero"

        assert detection.check(watching) == []
        assert len(notifier.of_level("gm")) == 1

    def test_suspicion_fades(self, manager, watching, world):
        """An occupant gone before the second check drops the patrol to IDLE."""
        manager.detection.check(watching)
        world.update_token("t-hero", x=1900)
        assert manager.detection.check(watching) == []
        assert watching.alert_state == AlertState.IDLE

    def test_new_occupant_fires_while_alert(self, manager, watching, add_bandit, settings):
        """Once ALERT, each newly seen occupant fires its own action."""
        settings.set_setting("detect_npcs", True)
        manager.detection.check(watching)
        manager.detection.check(watching)
        add_bandit(x=100, y=100)
        results = manager.detection.check(watching)
        assert [r["token_id"] for r in results] == ["t-bandit"]

    def test_hidden_patrol_does_not_detect(self, manager, watching, clock):
        """A blinked-out patrol sees nothing."""
        for step in (3, 1.5):
            clock.advance(step)
            manager.scheduler.advance(watching)
        manager.detection.check(watching)
        assert watching.alert_state == AlertState.IDLE

    def test_detection_disabled(self, manager, watching):
        manager.update_patrol(watching.id, detect_enabled=False)
        manager.detection.check(watching)
        assert watching.alert_state == AlertState.IDLE

    def test_stop_resets_alert(self, manager, watching):
        """Stopping clears alert and escalation state."""
        manager.detection.check(watching)
        manager.detection.check(watching)
        manager.stop_patrol(watching.id)
        assert watching.alert_state == AlertState.IDLE
        assert manager.detection.engaged(watching.id) == set()


class TestActions:
    """What fires on ALERT."""

    def alert(self, manager, patrol):
        manager.detection.check(patrol)
        return manager.detection.check(patrol)

    def test_visual_alert(self, manager, watching, telegraph):
        manager.update_patrol(watching.id, detection_action="alert")
        results = self.alert(manager, watching)
        assert results[0]["action"] == "alert"
        position, options = telegraph.requests[-1]
        assert position == (0, 0)
        assert options["type"] == "alert"

    def test_macro(self, manager, watching, ctx):
        """The configured macro runs with the patrol and occupant."""
        calls = []
        ctx.macros = MemoryMacroRunner({"raise-alarm": lambda **kw: calls.append(kw)})
        manager.update_patrol(watching.id, detection_action="macro", detection_macro="raise-alarm")
        self.alert(manager, watching)
        assert calls == [{"patrol_id": watching.id, "token_id": "t-hero", "scene_id": SCENE_ID}]

    def test_unknown_macro(self, manager, watching):
        manager.update_patrol(watching.id, detection_action="macro", detection_macro="missing")
        manager.detection.check(watching)
        with pytest.raises(MissingReference):
            manager.detection.check(watching)

    def test_none(self, manager, watching, notifier):
        manager.update_patrol(watching.id, detection_action="none")
        assert self.alert(manager, watching)[0]["action"] == "none"
        assert notifier.of_level("gm") == []

    def test_escalation_steps_are_saved_and_announced(self, manager, watching, world, ctx, memory_store):
        """Suspicion rising and fading is persisted and published like any transition."""
        saves = memory_store.save_count
        manager.detection.check(watching)
        assert memory_store.save_count == saves + 1
        event = ctx.bus.get_history(EventType.PATROL_UPDATED)[-1]
        assert event.data["alert"] == "suspicious"
        assert event.data["previous_alert"] == "idle"
        assert event.data["state"] == "active"

        world.update_token("t-hero", x=1900)
        manager.detection.check(watching)
        assert memory_store.save_count == saves + 2
        event = ctx.bus.get_history(EventType.PATROL_UPDATED)[-1]
        assert event.data["alert"] == "idle"
        assert event.data["previous_alert"] == "suspicious"

    def test_one_outcome_at_a_time_while_awaiting_approval(self, manager, watching, world, add_bandit, settings):
        """Two occupants arriving together during ALERT queue a single decision."""
        settings.update({"detect_npcs": True, "automateDecisions": True, "automateRequireApproval": True})
        manager.update_patrol(watching.id, detection_action="combat")
        manager.detection.check(watching)
        manager.detection.check(watching)
        assert len(manager.automation.get_pending_actions()) == 1
        manager.automation.reject_pending(0)

        add_bandit(x=100, y=100)
        world.create_token(Token(
            id="t-thug", scene_id=SCENE_ID, name="Thug", x=100, y=-100,
            actor_id="a-bandit", disposition=TokenDisposition.FRIENDLY,
        ))
        results = manager.detection.check(watching)
        assert len(results) == 1
        assert results[0]["pending"] is True
        assert len(manager.automation.get_pending_actions()) == 1
        first = results[0]["token_id"]

        # The other arrival gets its turn once the GM has answered
        manager.automation.reject_pending(0)
        results = manager.detection.check(watching)
        assert len(results) == 1
        assert results[0]["token_id"] in {"t-bandit", "t-thug"} - {first}
