"""
Combat resolution.

Starts combat for a capture, auto-resolves it from adapter estimates when
automation allows, and runs the bleed-out branch for a defeated occupant.
Every capability call is optional: missing ones degrade the outcome
instead of failing it.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from ..adapters.base import AttackEstimate, Capability
from ..errors import MissingCapability, MissingReference
from ..state.event_bus import EventType
from ..state.schema import (
    Actor,
    AlertState,
    CompositeUndo,
    Patrol,
    PatrolState,
    PendingActionType,
    Reinstate,
    ReleaseFromJail,
    RestoreHp,
    Token,
)
from ..tools.dice import roll_check, roll_d20

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)

MAX_ROUNDS = 6
DEFAULT_HP = 10
FALLBACK_ATTACK = AttackEstimate(avg_damage=5, attack_bonus=0)
BLEED_OUT_MAX_DC = 30

# Guard damage multiplier by aggressiveness
AGGRESSION_DAMAGE = {
    "aggressive": 1.2,
    "normal": 1.0,
    "conservative": 0.8,
}


def hit_chance(target_ac: int, attack_bonus: int) -> float:
    """Chance a d20 + bonus meets the AC, clamped to [0.05, 0.95]."""
    return max(0.05, min(0.95, (21 - (target_ac - attack_bonus)) / 20))


def bleed_out_dc(base_dc: int, hp: int, max_hp: int) -> int:
    """Base DC plus half the missing HP, capped at BLEED_OUT_MAX_DC."""
    return min(BLEED_OUT_MAX_DC, base_dc + max(0, max_hp - hp) // 2)


class CombatSystem:
    """Combat initiation, auto-resolve and bleed-out."""

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager

    @property
    def ctx(self):
        return self.manager.ctx

    @property
    def adapter(self):
        return self.manager.ctx.adapter

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _token(self, token_id: str | None) -> Token:
        token = self.ctx.world.get_token(token_id) if token_id else None
        if token is None:
            raise MissingReference("token", token_id)
        return token

    def _actor_for(self, token: Token) -> Actor | None:
        return self.ctx.world.get_actor(token.actor_id) if token.actor_id else None

    def _guard_actor(self, patrol: Patrol, token: Token) -> Actor | None:
        if patrol.guard_actor_id:
            actor = self.ctx.world.get_actor(patrol.guard_actor_id)
            if actor is not None:
                return actor
        return self._actor_for(token)

    def _hp(self, actor: Actor | None) -> int | None:
        if actor is None or not self.adapter.supports(Capability.GET_ACTOR_HP):
            return None
        return self.adapter.get_actor_hp(actor)

    def _max_hp(self, actor: Actor | None) -> int | None:
        if actor is None or not self.adapter.supports(Capability.GET_ACTOR_MAX_HP):
            return None
        return self.adapter.get_actor_max_hp(actor)

    def _ac(self, actor: Actor | None) -> int:
        if actor is None or not self.adapter.supports(Capability.GET_ACTOR_AC):
            return 10
        return self.adapter.get_actor_ac(actor)

    def _estimate(self, token: Token, actor: Actor | None) -> AttackEstimate:
        if actor is None:
            return FALLBACK_ATTACK
        return self.adapter.estimate_best_attack_for_token(token, actor) or FALLBACK_ATTACK

    def _damage(self, actor: Actor, amount: int) -> dict:
        """Lower HP through the adapter (or the core HP setter)."""
        if self.adapter.supports(Capability.APPLY_DAMAGE):
            change = self.adapter.apply_damage(actor, amount)
        else:
            before = self._hp(actor) or 0
            after = max(0, before - amount)
            self.adapter.set_actor_hp(actor, after)
            change = {"before": before, "after": after}
        self.ctx.world.save_actor(actor)
        return change

    # -------------------------------------------------------------------------
    # Initiation
    # -------------------------------------------------------------------------

    def alert_nearby_patrols(self, patrol: Patrol) -> list[str]:
        """Raise active patrols within `alertRadius` pixels to ALERT."""
        origin = self.ctx.world.get_token(patrol.token_id)
        if origin is None:
            return []
        radius = self.ctx.settings.alert_radius
        alerted = []
        for other in self.manager.get_patrols(patrol.scene_id):
            if other.id == patrol.id or other.state != PatrolState.ACTIVE:
                continue
            token = self.ctx.world.get_token(other.token_id) if other.token_id else None
            if token is None or token.distance_to(origin.x, origin.y) > radius:
                continue
            other.alert_state = AlertState.ALERT
            alerted.append(other.id)
            self.ctx.bus.emit(EventType.DETECTION_ALERT, scene_id=other.scene_id, patrol_id=other.id, source=patrol.id)
        if alerted:
            self.manager.save_scene(patrol.scene_id)
        return alerted

    def initiate_combat(self, patrol: Patrol, token: Token, context: dict | None = None) -> dict:
        """
        Start combat between a patrol and an occupant.

        Auto-resolves through the automation gate when `automateCombat`
        is effective and the adapter can estimate attacks.
        """
        alerted = self.alert_nearby_patrols(patrol)
        backup = self.manager.reinforcement.on_capture_start(patrol, token)
        self.ctx.bus.emit(
            EventType.COMBAT_STARTED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            token_id=token.id,
            alerted=alerted,
        )
        result = {"success": True, "outcome": "combat", "auto_resolved": False, "alerted": alerted}
        if backup.get("success"):
            result["assistants"] = backup["count"]

        if not self.manager.automation.is_enabled(patrol, "automate_combat"):
            self.ctx.notifier.info(f"{patrol.name} engages {token.name}!")
            return result

        if not self.adapter.supports(Capability.ESTIMATE_BEST_ATTACK):
            self.ctx.warn(
                f"{MissingCapability(Capability.ESTIMATE_BEST_ATTACK.value, self.adapter.system_id)}; "
                f"combat left to the table"
            )
            result["degraded"] = True
            return result

        payload = {
            "patrol_id": patrol.id,
            "token_id": token.id,
            "actor_id": token.actor_id,
            "scene_id": patrol.scene_id,
            **(context or {}),
        }
        gated = self.manager.automation.gate(
            PendingActionType.AUTO_RESOLVE_COMBAT,
            payload,
            patrol,
            flag="automate_combat",
            message=f"Auto-resolve combat: {patrol.name} vs {token.name}",
        )
        gated.setdefault("alerted", alerted)
        gated.setdefault("outcome", "combat")
        return gated

    # -------------------------------------------------------------------------
    # Auto-resolve
    # -------------------------------------------------------------------------

    def perform_auto_resolve(self, payload: dict[str, Any]) -> dict:
        patrol = self.manager.get_patrol(payload.get("patrol_id"))
        if patrol is None:
            return {"success": False, "error": str(MissingReference("patrol", payload.get("patrol_id")))}
        try:
            token = self._token(payload.get("token_id"))
        except MissingReference as e:
            self.ctx.warn(str(e))
            return {"success": False, "error": str(e)}
        return self.auto_resolve_combat(patrol, token)

    def simulate(self, guard: dict, occupant: dict) -> str:
        """
        Expected-damage simulation; returns the losing side.

        Each side is {hp, dpr}. Up to MAX_ROUNDS rounds; if nobody drops,
        the side that would die first by time-to-kill loses.
        """
        guard_hp, occupant_hp = guard["hp"], occupant["hp"]
        for _ in range(MAX_ROUNDS):
            guard_hp -= occupant["dpr"]
            occupant_hp -= guard["dpr"]
            if guard_hp <= 0 or occupant_hp <= 0:
                # Simultaneous knockout goes against the occupant
                return "occupant" if occupant_hp <= 0 else "guard"
        guard_ttk = guard["hp"] / occupant["dpr"] if occupant["dpr"] > 0 else math.inf
        occupant_ttk = occupant["hp"] / guard["dpr"] if guard["dpr"] > 0 else math.inf
        return "guard" if guard_ttk < occupant_ttk else "occupant"

    def auto_resolve_combat(self, patrol: Patrol, token: Token) -> dict:
        """
        Resolve a patrol-vs-occupant fight without rolling it out.

        Player characters are never defeated unless
        `autoResolveAffectsPlayers` is on; a GM suggestion is sent instead.
        """
        adapter = self.adapter
        if not adapter.supports(Capability.ESTIMATE_BEST_ATTACK):
            self.ctx.warn(str(MissingCapability(Capability.ESTIMATE_BEST_ATTACK.value, adapter.system_id)))
            return {"success": True, "outcome": "combat", "auto_resolved": False, "degraded": True}

        try:
            guard_token = self._token(patrol.token_id)
        except MissingReference as e:
            self.ctx.warn(f"Cannot auto-resolve for {patrol.name}: {e}")
            return {"success": False, "outcome": "combat", "auto_resolved": False, "error": str(e)}
        guard_actor = self._guard_actor(patrol, guard_token)
        occupant_actor = self._actor_for(token)

        guard_hp = self._hp(guard_actor)
        guard_max = self._max_hp(guard_actor)
        stance = self.manager.automation.decide_combat_action(guard_hp, guard_max, enemies=1)
        if stance == "flee":
            self.ctx.notifier.info(f"{patrol.name} is too wounded and falls back")
            self.manager.automation.log_ai_decision(
                "autoResolveCombat",
                f"{patrol.name} fled from {token.name}",
                payload={"patrol_id": patrol.id, "token_id": token.id, "stance": stance},
            )
            return {"success": True, "outcome": "combat", "auto_resolved": True, "winner": "occupant", "stance": stance}

        guard_attack = self._estimate(guard_token, guard_actor)
        occupant_attack = self._estimate(token, occupant_actor)
        damage_factor = AGGRESSION_DAMAGE[patrol.aggressiveness.value]
        if stance == "defend":
            damage_factor *= 0.5

        guard_side = {
            "hp": guard_hp or DEFAULT_HP,
            "dpr": guard_attack.avg_damage * damage_factor
            * hit_chance(self._ac(occupant_actor), guard_attack.attack_bonus),
        }
        occupant_side = {
            "hp": self._hp(occupant_actor) or DEFAULT_HP,
            "dpr": occupant_attack.avg_damage * hit_chance(self._ac(guard_actor), occupant_attack.attack_bonus),
        }
        loser = self.simulate(guard_side, occupant_side)
        logger.info(f"Auto-resolve {patrol.name} vs {token.name}: {loser} loses")

        if loser == "guard":
            result = self._defeat_guard(patrol, guard_token, guard_actor, token)
        else:
            result = self._defeat_occupant(patrol, token, occupant_actor)

        self.ctx.bus.emit(
            EventType.COMBAT_RESOLVED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            token_id=token.id,
            loser=loser,
        )
        return result

    def _defeat_guard(self, patrol: Patrol, guard_token: Token, guard_actor: Actor | None, occupant: Token) -> dict:
        hp_before = self._hp(guard_actor)
        snapshot = guard_token.model_copy(deep=True)
        if guard_actor is not None and hp_before:
            self._damage(guard_actor, hp_before)
        self.manager.stop_patrol(patrol.id)
        self.ctx.world.update_token(guard_token.id, hidden=True)
        entry = self.manager.automation.log_ai_decision(
            "autoResolveCombat",
            f"{patrol.name} was defeated by {occupant.name}",
            payload={"patrol_id": patrol.id, "token_id": occupant.id, "winner": "occupant"},
            undo=Reinstate(
                actor_id=guard_actor.id if guard_actor else None,
                token=snapshot,
                hp_before=hp_before,
                was_removed=False,
            ),
        )
        return {
            "success": True,
            "outcome": "combat",
            "auto_resolved": True,
            "winner": "occupant",
            "log_entry_id": entry.id,
        }

    def _defeat_occupant(self, patrol: Patrol, token: Token, actor: Actor | None) -> dict:
        adapter = self.adapter
        is_player = token.player_owned or (actor is not None and adapter.is_player_actor(actor))
        if is_player and not self.ctx.settings.auto_resolve_affects_players:
            self.ctx.notifier.whisper_gm(
                f"{token.name} would be defeated by auto-resolve. Manual action recommended."
            )
            return {
                "success": True,
                "outcome": "combat",
                "auto_resolved": False,
                "reason": "player_protected",
            }

        hp_before = self._hp(actor)
        snapshot = token.model_copy(deep=True)
        result: dict = {"success": True, "outcome": "combat", "auto_resolved": True, "winner": "guard"}

        if is_player:
            steps: list = []
            if actor is not None and hp_before:
                change = self._damage(actor, hp_before)
                steps.append(RestoreHp(actor_id=actor.id, before=change["before"], after=change["after"]))
            bleed = self.bleed_out_check(patrol, token, actor) if actor is not None else None
            if bleed is not None:
                result["bleed_out"] = bleed
                steps.extend(bleed.pop("undo_steps", []))
            else:
                self.ctx.world.update_token(token.id, hidden=True)
                steps = [Reinstate(actor_id=actor.id if actor else None, token=snapshot,
                                   hp_before=hp_before, was_removed=False)]
            undo = steps[0] if len(steps) == 1 else CompositeUndo(steps=steps) if steps else None
        else:
            if actor is not None and hp_before:
                self._damage(actor, hp_before)
            self.ctx.world.delete_token(token.id)
            undo = Reinstate(actor_id=actor.id if actor else None, token=snapshot,
                             hp_before=hp_before, was_removed=True)

        entry = self.manager.automation.log_ai_decision(
            "autoResolveCombat",
            f"{patrol.name} defeated {token.name}",
            payload={
                "patrol_id": patrol.id,
                "token_id": token.id,
                "actor_id": actor.id if actor else None,
                "winner": "guard",
                "bleed_out": (result.get("bleed_out") or {}).get("status"),
            },
            undo=undo,
        )
        result["log_entry_id"] = entry.id
        return result

    # -------------------------------------------------------------------------
    # Bleed-out
    # -------------------------------------------------------------------------

    def bleed_out_check(self, patrol: Patrol, token: Token, actor: Actor) -> dict | None:
        """
        Stabilisation check for an occupant below the HP threshold.

        Returns None when bleed-out does not apply. The DC rises with the
        wounds taken and the roll adds the constitution modifier; under GM
        control the result is whispered.
        Stabilised sets HP to 1; otherwise the occupant is captured (jailed,
        or left at 0 HP when the jail is unavailable).
        """
        settings = self.ctx.settings
        if not settings.bleed_out_enabled:
            return None
        hp = self._hp(actor)
        max_hp = self._max_hp(actor)
        if hp is None or not max_hp or hp >= max_hp * settings.bleed_out_threshold / 100:
            return None

        player_rolls = settings.bleed_out_player_control == "player" and self.adapter.is_player_actor(actor)
        dc = bleed_out_dc(settings.bleed_out_base_dc, hp, max_hp)
        modifier = self.adapter.get_constitution_mod(actor)
        roll = roll_check(dc, modifier=modifier, label="bleed-out", rng=self.ctx.rng)
        if not player_rolls:
            self.ctx.notifier.whisper_gm(
                f"Bleed-out for {token.name}: {roll.total} vs DC {roll.dc} ({roll.narrative})"
            )

        undo_steps: list = []
        if roll.success:
            self.adapter.set_actor_hp(actor, 1)
            self.ctx.world.save_actor(actor)
            status = "stabilised"
        else:
            jailed = self.manager.jail.send_to_jail(actor.id, captured_by=patrol.id, token_id=token.id)
            if jailed.get("success"):
                undo_steps.append(ReleaseFromJail(actor_id=actor.id))
                status = "captured"
            else:
                self.adapter.set_actor_hp(actor, 0)
                self.ctx.world.save_actor(actor)
                status = "down"

        self.ctx.bus.emit(
            EventType.BLEED_OUT,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            actor_id=actor.id,
            status=status,
            roll=roll.to_dict(),
        )
        return {"status": status, "roll": roll.to_dict(), "roller": "player" if player_rolls else "gm",
                "undo_steps": undo_steps}

    # -------------------------------------------------------------------------
    # Single action
    # -------------------------------------------------------------------------

    def perform_action(self, payload: dict[str, Any]) -> dict:
        """
        One attack from one token against another, logged with HP undo.

        Payload: attacker_token_id, target_token_id, optional patrol_id.
        """
        try:
            attacker = self._token(payload.get("attacker_token_id"))
            target = self._token(payload.get("target_token_id"))
        except MissingReference as e:
            self.ctx.warn(str(e))
            return {"success": False, "error": str(e)}

        attacker_actor = self._actor_for(attacker)
        target_actor = self._actor_for(target)
        if target_actor is None:
            error = MissingReference("actor", target.actor_id)
            self.ctx.warn(str(error))
            return {"success": False, "error": str(error)}

        adapter = self.adapter
        weapon = None
        bonus = 0
        if attacker_actor is not None and adapter.supports(Capability.ESTIMATE_BEST_ATTACK):
            estimate = self._estimate(attacker, attacker_actor)
            weapon, bonus = estimate.weapon, estimate.attack_bonus
            avg = estimate.avg_damage
        else:
            avg = FALLBACK_ATTACK.avg_damage

        attack_roll = roll_d20(self.ctx.rng) + bonus
        hit = attack_roll >= self._ac(target_actor)
        damage = 0
        if hit:
            if weapon is not None and adapter.supports(Capability.ROLL_ITEM_USE):
                damage = adapter.roll_item_use(weapon, attacker_actor, [target_actor])["damage"]
            else:
                damage = avg
        change = self._damage(target_actor, damage) if damage else {"before": self._hp(target_actor), "after": self._hp(target_actor)}

        entry = self.manager.automation.log_ai_decision(
            PendingActionType.PERFORM_ACTION.value,
            f"{attacker.name} {'hit' if hit else 'missed'} {target.name}"
            + (f" for {damage}" if hit else ""),
            payload={
                "patrol_id": payload.get("patrol_id"),
                "scene_id": attacker.scene_id,
                "attacker_token_id": attacker.id,
                "target_token_id": target.id,
                "attacker_actor_id": attacker.actor_id,
                "target_actor_id": target.actor_id,
                "attack_roll": attack_roll,
                "hit": hit,
                "damage": damage,
                "replay_of": payload.get("replay_of"),
            },
            undo=RestoreHp(
                actor_id=target_actor.id,
                before=change["before"] or 0,
                after=change["after"] or 0,
            ) if damage else None,
        )
        return {"success": True, "hit": hit, "damage": damage, "log_entry_id": entry.id}
