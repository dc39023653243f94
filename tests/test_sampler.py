"""Tests for weighted outcome sampling."""

import random
from collections import Counter

import pytest

from patrolwarden.state.schema import Aggressiveness, CaptureOutcome, CaptureOutcomeWeights
from patrolwarden.systems.sampler import bias_weights, draw_outcome, sample_weighted


class TestSampleWeighted:
    """Cumulative bucket selection."""

    def test_first_bucket_wins_below_its_bound(self):
        """A draw below the first upper bound picks the first key."""
        assert sample_weighted([("a", 30), ("b", 70)], 0) == "a"
        assert sample_weighted([("a", 30), ("b", 70)], 29.999) == "a"

    def test_boundary_belongs_to_next_bucket(self):
        """A draw exactly on a boundary goes to the following bucket."""
        assert sample_weighted([("a", 30), ("b", 70)], 30) == "b"

    def test_zero_weight_bucket_is_never_chosen(self):
        """Empty buckets are skipped even at their boundary."""
        weights = [("a", 0), ("b", 50), ("c", 0), ("d", 50)]
        assert sample_weighted(weights, 0) == "b"
        assert sample_weighted(weights, 50) == "d"

    def test_declaration_order_is_sampling_order(self):
        """Capture outcomes sample in combat, theft, relocate, disregard, jail order."""
        weights = CaptureOutcomeWeights().ordered()
        assert sample_weighted(weights, 0) == CaptureOutcome.COMBAT
        assert sample_weighted(weights, 30) == CaptureOutcome.THEFT
        assert sample_weighted(weights, 55) == CaptureOutcome.RELOCATE
        assert sample_weighted(weights, 75) == CaptureOutcome.DISREGARD
        assert sample_weighted(weights, 90) == CaptureOutcome.JAIL
        assert sample_weighted(weights, 99.99) == CaptureOutcome.JAIL

    def test_rejects_bad_input(self):
        """Empty weights and out-of-range draws raise."""
        with pytest.raises(ValueError):
            sample_weighted([], 0)
        with pytest.raises(ValueError):
            sample_weighted([("a", 10)], -1)
        with pytest.raises(ValueError):
            sample_weighted([("a", 10)], 10)


class TestDrawOutcome:
    """Random draws over configured weights."""

    def test_large_sample_converges_to_weights(self):
        """Outcome frequencies approach the configured percentages."""
        rng = random.Random(7)
        weights = CaptureOutcomeWeights()
        n = 20000
        counts = Counter(draw_outcome(weights, rng)[0] for _ in range(n))
        for outcome, weight in weights.ordered():
            assert abs(counts[outcome] / n - weight / 100) < 0.015

    def test_returns_draw_in_range(self):
        """The reported draw lies in [0, 100)."""
        rng = random.Random(1)
        for _ in range(100):
            _, draw = draw_outcome(CaptureOutcomeWeights(), rng)
            assert 0 <= draw < 100

    def test_single_outcome_is_certain(self):
        """A 100% bucket is always drawn."""
        weights = CaptureOutcomeWeights(combat=0, theft=0, relocate=0, disregard=0, jail=100)
        rng = random.Random(3)
        assert {draw_outcome(weights, rng)[0] for _ in range(50)} == {CaptureOutcome.JAIL}


class TestBiasWeights:
    """Aggressiveness scaling of automated draws."""

    def test_normal_is_unchanged(self):
        """Normal aggressiveness keeps the configured weights."""
        biased = dict(bias_weights(CaptureOutcomeWeights(), Aggressiveness.NORMAL))
        assert biased[CaptureOutcome.COMBAT] == 30
        assert biased[CaptureOutcome.THEFT] == 25

    def test_aggressive_favours_combat(self):
        """Aggressive patrols weight combat up and theft down."""
        biased = dict(bias_weights(CaptureOutcomeWeights(), Aggressiveness.AGGRESSIVE))
        assert biased[CaptureOutcome.COMBAT] == pytest.approx(36)
        assert biased[CaptureOutcome.THEFT] == pytest.approx(20)
        assert biased[CaptureOutcome.JAIL] == 10

    def test_conservative_favours_theft(self):
        """Conservative patrols weight combat down and theft up."""
        biased = dict(bias_weights(CaptureOutcomeWeights(), Aggressiveness.CONSERVATIVE))
        assert biased[CaptureOutcome.COMBAT] == pytest.approx(21)
        assert biased[CaptureOutcome.THEFT] == pytest.approx(27.5)
