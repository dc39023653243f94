"""
System adapter base.

An adapter bridges the resolution logic to one actor/combat data model.
The eight combat capabilities are optional: each adapter declares the
subset it implements, callers ask `supports()` before using one, and an
undeclared capability raises MissingCapability. Currency, items, HP
writes, level and player checks are core helpers every adapter has.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from ..errors import MissingCapability
from ..state.schema import Actor, Token
from ..tools.dice import average_damage, roll_formula

_MISSING = object()


class Capability(str, Enum):
    GET_ACTOR_HP = "get_actor_hp"
    GET_ACTOR_MAX_HP = "get_actor_max_hp"
    GET_ACTOR_AC = "get_actor_ac"
    GET_ATTACK_ITEMS = "get_attack_items"
    ESTIMATE_BEST_ATTACK = "estimate_best_attack_for_token"
    APPLY_DAMAGE = "apply_damage"
    RESTORE_DAMAGE = "restore_damage"
    ROLL_ITEM_USE = "roll_item_use"


@dataclass
class AttackEstimate:
    """Best attack an actor can make."""
    avg_damage: int
    attack_bonus: int
    weapon: dict | None = None


def get_path(data: dict, path: str, default: Any = None) -> Any:
    """Read a dotted path from nested dicts."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(data: dict, path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class SystemAdapter:
    """Base adapter; subclasses declare `capabilities` and data paths."""

    system_id: ClassVar[str] = "base"
    capabilities: ClassVar[frozenset[Capability]] = frozenset()

    hp_paths: ClassVar[tuple[str, ...]] = ("attributes.hp.value", "hp.value", "hp")
    max_hp_paths: ClassVar[tuple[str, ...]] = ("attributes.hp.max", "hp.max", "max_hp")
    ac_paths: ClassVar[tuple[str, ...]] = (
        "attributes.ac.value", "attributes.ac", "defenses.ac", "defences.ac", "ac",
    )
    gold_paths: ClassVar[tuple[str, ...]] = ("currency.gp", "details.wealth.value", "gold")
    level_paths: ClassVar[tuple[str, ...]] = ("details.level.value", "details.level", "level")
    con_mod_paths: ClassVar[tuple[str, ...]] = (
        "abilities.con.mod", "attributes.con.mod", "stats.constitution.mod",
    )

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    # -------------------------------------------------------------------------
    # Capability query
    # -------------------------------------------------------------------------

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if capability not in self.capabilities:
            raise MissingCapability(capability.value, self.system_id)

    # -------------------------------------------------------------------------
    # Data access helpers
    # -------------------------------------------------------------------------

    def _first_path(self, actor: Actor, paths: tuple[str, ...]) -> str | None:
        for path in paths:
            if _is_number(get_path(actor.data, path, _MISSING)):
                return path
        return None

    def _read_number(self, actor: Actor, paths: tuple[str, ...]) -> float | None:
        path = self._first_path(actor, paths)
        if path is None:
            return None
        return get_path(actor.data, path)

    # -------------------------------------------------------------------------
    # Optional capabilities
    # -------------------------------------------------------------------------

    def get_actor_hp(self, actor: Actor) -> int | None:
        self.require(Capability.GET_ACTOR_HP)
        value = self._read_number(actor, self.hp_paths)
        return None if value is None else int(value)

    def get_actor_max_hp(self, actor: Actor) -> int | None:
        self.require(Capability.GET_ACTOR_MAX_HP)
        value = self._read_number(actor, self.max_hp_paths)
        return None if value is None else int(value)

    def get_actor_ac(self, actor: Actor) -> int:
        self.require(Capability.GET_ACTOR_AC)
        value = self._read_number(actor, self.ac_paths)
        return 10 if value is None else int(value)

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [
            item for item in actor.items
            if item.get("type") == "weapon" or get_path(item, "system.damage") is not None
        ]

    def estimate_best_attack_for_token(self, token: Token, actor: Actor) -> AttackEstimate | None:
        self.require(Capability.ESTIMATE_BEST_ATTACK)
        best: AttackEstimate | None = None
        for item in self.get_attack_items(actor):
            formula = self._damage_formula(item)
            avg = average_damage(formula) if formula else None
            if avg is None:
                continue
            if best is None or avg > best.avg_damage:
                best = AttackEstimate(
                    avg_damage=round(avg),
                    attack_bonus=int(self._attack_bonus(item)),
                    weapon=item,
                )
        return best or self._fallback_attack(actor)

    def apply_damage(self, actor: Actor, amount: int) -> dict:
        """Lower HP by `amount`; returns {before, after} for undo."""
        self.require(Capability.APPLY_DAMAGE)
        before = self.get_actor_hp(actor) or 0
        after = max(0, before - int(amount))
        self.set_actor_hp(actor, after)
        return {"before": before, "after": after}

    def restore_damage(self, actor: Actor, hp_value: int) -> dict:
        """Set HP back to `hp_value`; returns {before, after}."""
        self.require(Capability.RESTORE_DAMAGE)
        before = self.get_actor_hp(actor) or 0
        self.set_actor_hp(actor, int(hp_value))
        return {"before": before, "after": int(hp_value)}

    def roll_item_use(self, item: dict, attacker: Actor, targets: list[Actor] | None = None) -> dict:
        """Roll the item's damage formula."""
        self.require(Capability.ROLL_ITEM_USE)
        formula = self._damage_formula(item) or "1d4"
        return {"formula": formula, "damage": roll_formula(formula, self.rng)}

    def _damage_formula(self, item: dict) -> str | None:
        damage = get_path(item, "system.damage")
        if isinstance(damage, str):
            return damage
        if isinstance(damage, dict):
            parts = damage.get("parts")
            if parts and isinstance(parts[0], (list, tuple)) and parts[0]:
                return str(parts[0][0])
            for key in ("value", "dice", "formula"):
                if damage.get(key):
                    return str(damage[key])
        return None

    def _attack_bonus(self, item: dict) -> float:
        value = get_path(item, "system.attackBonus", 0)
        return value if _is_number(value) else 0

    def _fallback_attack(self, actor: Actor) -> AttackEstimate | None:
        return None

    # -------------------------------------------------------------------------
    # Core helpers
    # -------------------------------------------------------------------------

    def set_actor_hp(self, actor: Actor, value: int) -> None:
        path = self._first_path(actor, self.hp_paths) or self.hp_paths[0]
        set_path(actor.data, path, max(0, int(value)))

    def get_actor_level(self, actor: Actor) -> int:
        value = self._read_number(actor, self.level_paths)
        return int(value) if value is not None else actor.level

    def get_constitution_mod(self, actor: Actor) -> int:
        """Toughness modifier for survival checks; 0 when the sheet has none."""
        value = self._read_number(actor, self.con_mod_paths)
        return int(value) if value is not None else 0

    def is_player_actor(self, actor: Actor) -> bool:
        return actor.is_player

    def get_actor_gold(self, actor: Actor) -> int:
        value = self._read_number(actor, self.gold_paths)
        return int(value) if value is not None else 0

    def set_actor_gold(self, actor: Actor, amount: int) -> None:
        path = self._first_path(actor, self.gold_paths) or self.gold_paths[0]
        set_path(actor.data, path, max(0, int(amount)))

    def add_actor_gold(self, actor: Actor, amount: int) -> int:
        self.set_actor_gold(actor, self.get_actor_gold(actor) + int(amount))
        return self.get_actor_gold(actor)

    def remove_actor_gold(self, actor: Actor, amount: int) -> int:
        """Remove up to `amount`; returns what was actually taken."""
        current = self.get_actor_gold(actor)
        taken = min(current, max(0, int(amount)))
        self.set_actor_gold(actor, current - taken)
        return taken

    def get_item_quantity(self, item: dict) -> int:
        value = get_path(item, "system.quantity", 1)
        return int(value) if _is_number(value) else 1

    def remove_item_from_actor(self, actor: Actor, item_id: str, quantity: int = 1) -> dict | None:
        """
        Take `quantity` units of an item.

        Returns a copy of the removed item data (with the removed quantity),
        or None if the actor does not hold it.
        """
        for index, item in enumerate(actor.items):
            if item.get("id") != item_id and item.get("name") != item_id:
                continue
            held = self.get_item_quantity(item)
            taken = min(held, max(1, quantity))
            removed = _copy_item(item)
            set_path(removed, "system.quantity", taken)
            if held > taken:
                set_path(item, "system.quantity", held - taken)
            else:
                actor.items.pop(index)
            return removed
        return None

    def restore_item_to_actor(self, actor: Actor, item_data: dict) -> None:
        """Give an item back, merging quantity into a matching stack."""
        quantity = self.get_item_quantity(item_data)
        for item in actor.items:
            if item.get("name") == item_data.get("name") and item.get("type") == item_data.get("type"):
                set_path(item, "system.quantity", self.get_item_quantity(item) + quantity)
                return
        actor.items.append(_copy_item(item_data))


def _copy_item(item: dict) -> dict:
    copied = dict(item)
    if isinstance(item.get("system"), dict):
        copied["system"] = dict(item["system"])
    return copied
