"""Call of Cthulhu adapter."""

from ..state.schema import Actor
from .base import Capability, SystemAdapter, get_path


class CallOfCthulhuAdapter(SystemAdapter):
    """HP lives in status.hp (older sheets: wounds); parry doubles as AC."""

    system_id = "call-of-cthulhu"
    capabilities = frozenset(Capability)

    hp_paths = ("status.hp.value", "wounds.value", "attributes.hp.value")
    max_hp_paths = ("status.hp.max", "wounds.max", "attributes.hp.max")
    ac_paths = ("attributes.ac.value", "defences.parry")

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [
            item for item in actor.items
            if item.get("type") in ("weapon", "melee") or get_path(item, "system.damage")
        ]

    def _attack_bonus(self, item: dict) -> float:
        for path in ("system.attack", "system.bonus"):
            value = get_path(item, path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
        return 0
