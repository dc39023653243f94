"""Dice and timing helpers."""

from .dice import (
    RollResult,
    apply_variance,
    average_damage,
    parse_dice,
    roll_check,
    roll_d20,
    roll_formula,
)

__all__ = [
    "RollResult",
    "apply_variance",
    "average_damage",
    "parse_dice",
    "roll_check",
    "roll_d20",
    "roll_formula",
]
