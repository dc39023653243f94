"""
Weighted outcome sampling.

Pure functions so the draw can be tested apart from any random source.
"""

import random
from typing import Hashable, Iterable, TypeVar

from ..state.schema import Aggressiveness, CaptureOutcome, CaptureOutcomeWeights

K = TypeVar("K", bound=Hashable)

# Multipliers applied to (combat, theft) by automated decisions
AGGRESSIVENESS_BIAS: dict[Aggressiveness, tuple[float, float]] = {
    Aggressiveness.AGGRESSIVE: (1.2, 0.8),
    Aggressiveness.NORMAL: (1.0, 1.0),
    Aggressiveness.CONSERVATIVE: (0.7, 1.1),
}


def sample_weighted(weights: Iterable[tuple[K, float]], draw: float) -> K:
    """
    Pick the first bucket whose cumulative upper bound exceeds `draw`.

    Declaration order breaks ties: a draw landing exactly on a boundary
    belongs to the next bucket.

    Raises:
        ValueError: no weights, or draw outside [0, total)
    """
    items = list(weights)
    if not items:
        raise ValueError("no weights to sample from")
    if draw < 0:
        raise ValueError(f"draw must be non-negative (got {draw})")
    upper = 0.0
    for key, weight in items:
        upper += weight
        if draw < upper:
            return key
    raise ValueError(f"draw {draw} is outside the total weight {upper}")


def bias_weights(
    weights: CaptureOutcomeWeights,
    aggressiveness: Aggressiveness,
) -> list[tuple[CaptureOutcome, float]]:
    """Ordered weights with combat/theft scaled by aggressiveness."""
    combat_factor, theft_factor = AGGRESSIVENESS_BIAS[aggressiveness]
    biased = []
    for outcome, weight in weights.ordered():
        if outcome == CaptureOutcome.COMBAT:
            weight = weight * combat_factor
        elif outcome == CaptureOutcome.THEFT:
            weight = weight * theft_factor
        biased.append((outcome, float(weight)))
    return biased


def draw_outcome(
    weights: Iterable[tuple[CaptureOutcome, float]] | CaptureOutcomeWeights,
    rng: random.Random | None = None,
) -> tuple[CaptureOutcome, float]:
    """
    Draw an outcome; returns (outcome, draw).

    The draw is uniform over [0, total), which is [0, 100) for validated
    weights.
    """
    ordered = weights.ordered() if isinstance(weights, CaptureOutcomeWeights) else list(weights)
    total = sum(w for _, w in ordered)
    draw = (rng or random).random() * total
    return sample_weighted(ordered, draw), draw
