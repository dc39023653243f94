"""
Dice rolling tools.

d20 checks for escape/bleed-out/attack rolls and "XdY+k" damage formulas.
Every function takes an optional random source so simulations can be seeded.
"""

import random
import re
from dataclasses import dataclass

DICE_PATTERN = re.compile(r"^\s*(\d*)d(\d+)\s*(?:([+-])\s*(\d+))?\s*$", re.IGNORECASE)


@dataclass
class RollResult:
    """One d20 check against a DC."""
    roll: int
    modifier: int
    total: int
    dc: int
    label: str = ""

    @property
    def success(self) -> bool:
        return self.total >= self.dc

    @property
    def margin(self) -> int:
        return self.total - self.dc

    @property
    def narrative(self) -> str:
        """Short description for operator messages."""
        if self.success:
            return "easily" if self.margin >= 5 else "barely"
        return "hopelessly" if self.margin <= -10 else "narrowly"

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "roll": self.roll,
            "modifier": self.modifier,
            "total": self.total,
            "dc": self.dc,
            "success": self.success,
        }


def roll_d20(rng: random.Random | None = None) -> int:
    return (rng or random).randint(1, 20)


def roll_check(
    dc: int,
    modifier: int = 0,
    label: str = "",
    rng: random.Random | None = None,
) -> RollResult:
    """d20 + modifier against `dc`; meeting the DC succeeds."""
    roll = roll_d20(rng)
    return RollResult(roll=roll, modifier=modifier, total=roll + modifier, dc=dc, label=label)


def parse_dice(formula: str) -> tuple[int, int, int] | None:
    """Split 'XdY+k' into (count, sides, bonus); None if unparseable."""
    match = DICE_PATTERN.match(str(formula or ""))
    if not match:
        return None
    count = int(match.group(1) or 1)
    sides = int(match.group(2))
    bonus = int(match.group(4) or 0)
    if match.group(3) == "-":
        bonus = -bonus
    return count, sides, bonus


def average_damage(formula: str) -> float | None:
    """Expected value of a damage formula: count*(sides+1)/2 + bonus."""
    parsed = parse_dice(formula)
    if parsed is None:
        try:
            return float(formula)
        except (TypeError, ValueError):
            return None
    count, sides, bonus = parsed
    return count * (sides + 1) / 2 + bonus


def roll_formula(formula: str, rng: random.Random | None = None) -> int:
    """Roll a damage formula; flat numbers are returned as-is."""
    parsed = parse_dice(formula)
    if parsed is None:
        return int(float(formula))
    count, sides, bonus = parsed
    source = rng or random
    return max(0, sum(source.randint(1, sides) for _ in range(count)) + bonus)


def apply_variance(base: float, variance_pct: float, rng: random.Random | None = None) -> float:
    """Jitter a duration by +/- variance percent, never below 0.1 s."""
    if variance_pct <= 0:
        return max(0.1, base)
    spread = base * variance_pct / 100
    return max(0.1, base + (rng or random).uniform(-spread, spread))
