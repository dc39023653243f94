"""Savage Worlds (SWADE) adapter."""

from ..state.schema import Actor
from .base import Capability, SystemAdapter, get_path, set_path


class SwadeAdapter(SystemAdapter):
    """
    SWADE counts wounds up instead of hit points down.

    HP is read as the wounds still available (status.wounds.max minus
    status.wounds.value), so damage adds wounds and healing removes them.
    Actors without a wounds block fall back to attributes.hp. Parry
    stands in for AC.
    """

    system_id = "swade"
    capabilities = frozenset(Capability)

    ac_paths = ("stats.parry.value", "stats.parry", "attributes.ac.value")

    def _wounds(self, actor: Actor) -> tuple[int, int] | None:
        value = get_path(actor.data, "status.wounds.value")
        maximum = get_path(actor.data, "status.wounds.max")
        if not isinstance(value, (int, float)) or not isinstance(maximum, (int, float)):
            return None
        return int(value), int(maximum)

    def get_actor_hp(self, actor: Actor) -> int | None:
        self.require(Capability.GET_ACTOR_HP)
        wounds = self._wounds(actor)
        if wounds is None:
            return super().get_actor_hp(actor)
        value, maximum = wounds
        return max(0, maximum - value)

    def get_actor_max_hp(self, actor: Actor) -> int | None:
        self.require(Capability.GET_ACTOR_MAX_HP)
        wounds = self._wounds(actor)
        if wounds is None:
            return super().get_actor_max_hp(actor)
        return wounds[1]

    def set_actor_hp(self, actor: Actor, value: int) -> None:
        wounds = self._wounds(actor)
        if wounds is None:
            super().set_actor_hp(actor, value)
            return
        maximum = wounds[1]
        set_path(actor.data, "status.wounds.value", maximum - min(maximum, max(0, int(value))))

    def get_attack_items(self, actor: Actor) -> list[dict]:
        self.require(Capability.GET_ATTACK_ITEMS)
        return [i for i in actor.items if i.get("type") in ("weapon", "combat")]

    def _damage_formula(self, item: dict) -> str | None:
        for path in ("system.damage", "system.effect"):
            value = get_path(item, path)
            if isinstance(value, str) and value:
                return value
        return super()._damage_formula(item)

    def _attack_bonus(self, item: dict) -> float:
        for path in ("system.attack", "system.bonus"):
            value = get_path(item, path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
        return 0
