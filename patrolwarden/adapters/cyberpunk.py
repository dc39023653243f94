"""Cyberpunk adapter."""

from ..state.schema import Actor
from .base import Capability, SystemAdapter, get_path


class CyberpunkAdapter(SystemAdapter):
    """HP at the top of the sheet (hp.value); weapons carry a weaponType."""

    system_id = "cyberpunk"
    capabilities = frozenset(Capability)

    hp_paths = ("hp.value", "attributes.hp.value")
    max_hp_paths = ("hp.max", "attributes.hp.max")

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [
            item for item in actor.items
            if item.get("type") == "weapon" or get_path(item, "system.weaponType")
        ]
