"""Pathfinder 2e adapter."""

from ..state.schema import Actor
from .base import AttackEstimate, Capability, SystemAdapter, get_path


class Pf2eAdapter(SystemAdapter):
    """Strikes carry damage in system.damage.value/dice; no item rolling."""

    system_id = "pf2e"
    capabilities = frozenset(Capability) - {Capability.ROLL_ITEM_USE}

    ac_paths = ("attributes.ac.value", "attributes.ac", "defences.ac")
    gold_paths = ("currency.gp", "gold")

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [
            item for item in actor.items
            if item.get("type") in ("strike", "weapon", "melee")
            or get_path(item, "system.damage") is not None
        ]

    def _attack_bonus(self, item: dict) -> float:
        for path in ("system.attack.mod", "system.attack", "system.bonus.value"):
            value = get_path(item, path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
        return 0

    def _fallback_attack(self, actor: Actor) -> AttackEstimate:
        level = self.get_actor_level(actor)
        perception = get_path(actor.data, "skills.perception.rank", 0) or 0
        return AttackEstimate(avg_damage=max(5, round(level * 1.5)), attack_bonus=int(perception))
