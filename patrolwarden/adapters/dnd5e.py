"""D&D 5e adapter."""

from ..state.schema import Actor
from .base import AttackEstimate, Capability, SystemAdapter, get_path


class Dnd5eAdapter(SystemAdapter):
    """
    5e actor data: attributes.hp, attributes.ac, currency.gp and weapons
    whose damage lives in system.damage.parts.
    """

    system_id = "dnd5e"
    capabilities = frozenset(Capability)

    ac_paths = ("attributes.ac.value", "attributes.ac.flat", "attributes.ac")
    level_paths = ("details.level", "details.cr")

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [i for i in actor.items if i.get("type") in ("weapon", "melee", "ranged")]

    def _attack_bonus(self, item: dict) -> float:
        for path in ("system.attackBonus", "system.properties.atk"):
            value = get_path(item, path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
        return 0

    def _fallback_attack(self, actor: Actor) -> AttackEstimate:
        prof = get_path(actor.data, "attributes.prof", 0) or 0
        strmod = get_path(actor.data, "abilities.str.mod", 0) or 0
        cr = get_path(actor.data, "details.cr", 5) or 5
        return AttackEstimate(avg_damage=round(cr), attack_bonus=int(prof + strmod))

    def is_player_actor(self, actor: Actor) -> bool:
        return actor.is_player or actor.type == "character"
