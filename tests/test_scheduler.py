"""Tests for the waypoint/blink scheduler."""

import random

import pytest

from conftest import SCENE_ID
from patrolwarden.errors import MissingReference
from patrolwarden.state import EventType
from patrolwarden.systems.scheduler import Phase, PatrolRuntime


def make_patrol(manager, points, **fields):
    waypoints = [manager.create_waypoint(SCENE_ID, x, y, **extra) for x, y, extra in points]
    patrol = manager.create_patrol(
        scene_id=SCENE_ID,
        token_id="t-guard",
        waypoint_ids=[w.id for w in waypoints],
        timing_variance=0,
        **fields,
    )
    return patrol, waypoints


class TestBlinkCycle:
    """VISIBLE -> TELEGRAPH -> HIDDEN -> VISIBLE."""

    def test_full_cycle(self, manager, patrol, world, clock, telegraph, ctx):
        """A blink dwells, telegraphs, relocates hidden, then reappears."""
        scheduler = manager.scheduler
        manager.start_patrol(patrol.id)
        token = world.get_token("t-guard")
        assert (token.x, token.y, token.hidden) == (0, 0, False)

        clock.advance(1)
        assert scheduler.advance(patrol) == Phase.VISIBLE

        clock.advance(2)
        assert scheduler.advance(patrol) == Phase.TELEGRAPH
        position, options = telegraph.requests[-1]
        assert position == (1000, 0)
        assert options == {"type": "ripple", "duration": 1500, "color": "#ff4444", "size": 100}
        assert patrol.current_waypoint_index == 0

        clock.advance(1.5)
        assert scheduler.advance(patrol) == Phase.HIDDEN
        assert (token.x, token.y, token.hidden) == (1000, 0, True)
        assert patrol.current_waypoint_index == 1
        assert ctx.bus.get_history(EventType.PATROL_MOVED)[-1].data["index"] == 1

        clock.advance(2)
        assert scheduler.advance(patrol) == Phase.VISIBLE
        assert token.hidden is False

    def test_sequential_wraps(self, manager, patrol, clock):
        """After the last waypoint the cursor returns to 0."""
        manager.start_patrol(patrol.id)
        for _ in range(2):
            for step in (3, 1.5, 2):
                clock.advance(step)
                manager.scheduler.advance(patrol)
        assert patrol.current_waypoint_index == 0

    def test_short_telegraph_signal(self, manager, patrol, clock, ctx):
        """A completion signal shorter than the configured duration is used."""
        class QuickTelegraph:
            def show_telegraph(self, position, options):
                return 0.5

            def cancel_all(self):
                pass

        ctx.telegraph = QuickTelegraph()
        manager.start_patrol(patrol.id)
        clock.advance(3)
        manager.scheduler.advance(patrol)
        assert manager.scheduler.get_runtime(patrol.id).phase_ends_at == pytest.approx(clock() + 0.5)

    def test_waypoint_dwell_override(self, manager, clock):
        """A waypoint's appear duration beats the patrol's."""
        patrol, _ = make_patrol(manager, [(0, 0, {"appear_duration": 10}), (500, 0, {})], blink_pattern="sequential")
        manager.start_patrol(patrol.id)
        clock.advance(5)
        assert manager.scheduler.advance(patrol) == Phase.VISIBLE
        clock.advance(5)
        assert manager.scheduler.advance(patrol) == Phase.TELEGRAPH


class TestWalk:
    """Interpolated movement."""

    def test_walk_interpolates_and_arrives(self, manager, world, clock):
        """Walk mode moves the token along the segment, then advances the cursor."""
        patrol, _ = make_patrol(manager, [(0, 0, {}), (1000, 0, {})], mode="walk", walk_speed=4)
        manager.start_patrol(patrol.id)
        token = world.get_token("t-guard")

        clock.advance(3)
        assert manager.scheduler.advance(patrol) == Phase.WALKING

        clock.advance(1.25)
        assert manager.scheduler.advance(patrol) == Phase.WALKING
        assert token.x == pytest.approx(500)
        assert token.hidden is False

        clock.advance(1.25)
        assert manager.scheduler.advance(patrol) == Phase.VISIBLE
        assert token.x == 1000
        assert patrol.current_waypoint_index == 1

    def test_hybrid_uses_waypoint_teleport_flag(self, manager, clock, telegraph):
        """Hybrid patrols blink to teleport waypoints and walk to the rest."""
        patrol, _ = make_patrol(
            manager,
            [(0, 0, {}), (400, 0, {"teleport": True}), (800, 0, {})],
            mode="hybrid",
            blink_pattern="sequential",
        )
        manager.start_patrol(patrol.id)
        clock.advance(3)
        assert manager.scheduler.advance(patrol) == Phase.TELEGRAPH
        assert len(telegraph.requests) == 1

        clock.advance(1.5)
        manager.scheduler.advance(patrol)
        clock.advance(2)
        manager.scheduler.advance(patrol)
        clock.advance(3)
        assert manager.scheduler.advance(patrol) == Phase.WALKING


class TestPatterns:
    """Next-waypoint selection."""

    def test_random_never_repeats_current(self, manager):
        """Random selection excludes the waypoint the patrol stands on."""
        patrol, _ = make_patrol(manager, [(0, 0, {}), (100, 0, {}), (200, 0, {})], blink_pattern="random")
        for current in range(3):
            patrol.current_waypoint_index = current
            picks = {manager.scheduler.select_next_index(patrol) for _ in range(50)}
            assert current not in picks
            assert len(picks) == 2

    def test_ping_pong_bounces(self, manager):
        """Ping-pong runs to the end and back."""
        patrol, _ = make_patrol(manager, [(0, 0, {}), (100, 0, {}), (200, 0, {})], blink_pattern="ping_pong")
        runtime = PatrolRuntime(phase=Phase.VISIBLE, phase_ends_at=0)
        sequence = []
        for _ in range(5):
            patrol.current_waypoint_index = manager.scheduler.select_next_index(patrol, runtime)
            sequence.append(patrol.current_waypoint_index)
        assert sequence == [1, 2, 1, 0, 1]

    def test_duplicates_are_distinct_indices(self, manager):
        """Repeated waypoint ids are separate cursor positions."""
        patrol, waypoints = make_patrol(manager, [(0, 0, {}), (100, 0, {})], blink_pattern="sequential")
        patrol.waypoint_ids = [waypoints[0].id, waypoints[1].id, waypoints[0].id]
        sequence = []
        for _ in range(3):
            patrol.current_waypoint_index = manager.scheduler.select_next_index(patrol)
            sequence.append(patrol.current_waypoint_index)
        assert sequence == [1, 2, 0]

    def test_disabled_waypoints_skipped(self, manager):
        """Sequential selection steps over disabled waypoints."""
        patrol, _ = make_patrol(
            manager, [(0, 0, {}), (100, 0, {"disabled": True}), (200, 0, {})], blink_pattern="sequential"
        )
        assert manager.scheduler.select_next_index(patrol) == 2

    def test_priority_picks_highest(self, manager):
        """Priority selection takes the highest-priority other waypoint."""
        patrol, _ = make_patrol(
            manager,
            [(0, 0, {"priority": 9}), (100, 0, {"priority": 1}), (200, 0, {"priority": 5})],
            blink_pattern="priority",
        )
        assert manager.scheduler.select_next_index(patrol) == 2
        patrol.current_waypoint_index = 2
        assert manager.scheduler.select_next_index(patrol) == 0

    def test_weighted_skips_zero_weight(self, manager, ctx):
        """A zero-weight waypoint is never drawn."""
        ctx.rng = random.Random(11)
        patrol, _ = make_patrol(
            manager,
            [(0, 0, {}), (100, 0, {"weight": 0}), (200, 0, {"weight": 3})],
            blink_pattern="weighted",
        )
        assert {manager.scheduler.select_next_index(patrol) for _ in range(30)} == {2}

    def test_walk_forces_sequential(self, manager):
        """Walk mode ignores the blink pattern."""
        patrol, _ = make_patrol(
            manager, [(0, 0, {}), (100, 0, {}), (200, 0, {})], mode="walk", blink_pattern="random"
        )
        assert manager.scheduler.select_next_index(patrol) == 1


class TestPauseAndErrors:
    """Timers and failure cases."""

    def test_pause_shifts_timers(self, manager, patrol, clock):
        """Time spent paused does not count toward the dwell."""
        manager.start_patrol(patrol.id)
        clock.advance(1)
        manager.pause_patrol(patrol.id)
        clock.advance(10)
        manager.resume_patrol(patrol.id)
        clock.advance(1)
        assert manager.scheduler.advance(patrol) == Phase.VISIBLE
        clock.advance(1)
        assert manager.scheduler.advance(patrol) == Phase.TELEGRAPH

    def test_missing_token_raises(self, manager, patrol, world, clock):
        """A vanished token is reported as MissingReference."""
        manager.start_patrol(patrol.id)
        clock.advance(3)
        manager.scheduler.advance(patrol)
        del world.tokens["t-guard"]
        clock.advance(1.5)
        with pytest.raises(MissingReference):
            manager.scheduler.advance(patrol)

    def test_stop_cancels_movement(self, manager, patrol, world, clock):
        """Stopping mid-blink drops the runtime and unhides the token."""
        manager.start_patrol(patrol.id)
        for step in (3, 1.5):
            clock.advance(step)
            manager.scheduler.advance(patrol)
        assert world.get_token("t-guard").hidden is True
        manager.stop_patrol(patrol.id)
        assert manager.scheduler.get_runtime(patrol.id) is None
        assert world.get_token("t-guard").hidden is False
