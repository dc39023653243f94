"""Starfinder adapter."""

from ..state.schema import Actor
from .base import Capability, SystemAdapter, get_path


class StarfinderAdapter(SystemAdapter):
    """5e-like HP block; AC from attributes.ac or defenses.ac."""

    system_id = "sfrpg"
    capabilities = frozenset(Capability)

    hp_paths = ("attributes.hp.value",)
    max_hp_paths = ("attributes.hp.max",)
    ac_paths = ("attributes.ac.value", "defenses.ac")

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [
            item for item in actor.items
            if item.get("type") in ("weapon", "strike") or get_path(item, "system.damage")
        ]

    def _attack_bonus(self, item: dict) -> float:
        value = get_path(item, "system.attack", 0)
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
