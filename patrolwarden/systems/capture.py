"""
Capture outcome resolver.

When a patrol engages an occupant in capture range one outcome is drawn
from the configured weights (combat, theft, relocate, disregard, jail).
Combat and jail may first be bought off with a bribe. Every resolved
outcome is logged with whatever undo it supports and starts the
occupant's detection cooldown.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from ..errors import MissingReference
from ..state.event_bus import EventType
from ..state.schema import (
    Actor,
    CaptureOutcome,
    CompositeUndo,
    Patrol,
    PendingActionType,
    ReleaseFromJail,
    RestoreCurrency,
    RestoreItem,
    Token,
)
from .sampler import draw_outcome

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)

# Theft target categories, in draw order
THEFT_TARGET_WEIGHTS = (
    ("currency", 70),
    ("equipment", 25),
    ("misc", 5),
)

EQUIPMENT_TYPES = {"weapon", "equipment", "tool", "consumable"}
MISC_TYPES = {"loot", "backpack", "treasure"}
NEVER_STOLEN_TYPES = {"spell", "feat", "class"}
QUEST_NAME_MARKERS = ("quest", "key", "mcguffin")

BRIBE_OUTCOMES = {CaptureOutcome.COMBAT, CaptureOutcome.JAIL}


def is_quest_item(item: dict) -> bool:
    """Items that theft must never take."""
    flags = item.get("flags") or {}
    if flags.get("questItem") or flags.get("critical"):
        return True
    if (item.get("system") or {}).get("rarity") == "artifact":
        return True
    name = str(item.get("name", "")).lower()
    return any(marker in name for marker in QUEST_NAME_MARKERS)


def item_category(item: dict) -> str | None:
    item_type = item.get("type", "")
    if item_type in NEVER_STOLEN_TYPES:
        return None
    if item_type in EQUIPMENT_TYPES:
        return "equipment"
    return "misc"


def _single_undo(steps: list):
    if not steps:
        return None
    if len(steps) == 1:
        return steps[0]
    return CompositeUndo(steps=steps)


class CaptureSystem:
    """Draws and executes capture outcomes, including bribery."""

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager

    @property
    def ctx(self):
        return self.manager.ctx

    @property
    def settings(self):
        return self.manager.ctx.settings

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _grid_size(self, scene_id: str) -> int:
        scene = self.ctx.world.get_scene(scene_id)
        return scene.grid_size if scene and scene.grid_size else 100

    def _actor(self, token: Token) -> Actor | None:
        return self.ctx.world.get_actor(token.actor_id) if token.actor_id else None

    def _guard_holder(self, patrol: Patrol) -> Actor | None:
        """Actor receiving stolen goods, when transfer is on."""
        if not self.settings.theft_transfer_to_guard:
            return None
        if patrol.guard_actor_id:
            return self.ctx.world.get_actor(patrol.guard_actor_id)
        patrol_token = self.ctx.world.get_token(patrol.token_id) if patrol.token_id else None
        if patrol_token is not None and patrol_token.actor_id:
            return self.ctx.world.get_actor(patrol_token.actor_id)
        return None

    def bribe_cost(self, patrol: Patrol) -> int:
        return math.floor(self.settings.bribery_base_cost * patrol.bribe_multiplier)

    def _resolve_payload(self, payload: dict[str, Any]) -> tuple[Patrol, Token] | dict:
        patrol = self.manager.get_patrol(payload.get("patrol_id"))
        if patrol is None:
            error = MissingReference("patrol", payload.get("patrol_id"))
            self.ctx.warn(str(error))
            return {"success": False, "error": str(error)}
        token = self.ctx.world.get_token(payload.get("token_id")) if payload.get("token_id") else None
        if token is None:
            error = MissingReference("token", payload.get("token_id"))
            self.ctx.warn(str(error))
            return {"success": False, "error": str(error)}
        return patrol, token

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def resolve_capture(self, patrol: Patrol, token: Token) -> dict:
        """
        Draw an outcome for an engaged occupant and route it.

        Returns {"success": False, "reason": "out_of_range"} when the
        occupant is beyond `captureRange`; detection retries next tick.
        """
        if not self.settings.capture_enabled:
            return {"success": False, "reason": "capture_disabled"}

        patrol_token = self.ctx.world.get_token(patrol.token_id) if patrol.token_id else None
        if patrol_token is None:
            raise MissingReference("token", patrol.token_id)

        distance = token.distance_to(patrol_token.x, patrol_token.y) / self._grid_size(patrol.scene_id)
        if distance > self.settings.capture_range:
            return {"success": False, "reason": "out_of_range", "distance": round(distance, 2)}

        automation = self.manager.automation
        if automation.is_enabled(patrol, "automate_decisions"):
            outcome, draw = automation.decide_capture_outcome(patrol)
        else:
            outcome, draw = draw_outcome(self.settings.capture_outcome_weights, self.ctx.rng)
        logger.info(f"{patrol.name} captured {token.name}: drew {outcome.value} ({draw:.1f})")

        payload = {
            "patrol_id": patrol.id,
            "token_id": token.id,
            "actor_id": token.actor_id,
            "scene_id": patrol.scene_id,
            "outcome": outcome.value,
            "draw": draw,
        }

        actor = self._actor(token)
        cost = self.bribe_cost(patrol)
        if (
            self.settings.bribery_enabled
            and outcome in BRIBE_OUTCOMES
            and actor is not None
            and self.ctx.adapter.get_actor_gold(actor) >= cost
        ):
            payload["bribe_amount"] = cost
            return automation.gate(
                PendingActionType.BRIBERY,
                payload,
                patrol,
                message=f"{token.name} offers {patrol.name} a {cost} gp bribe",
            )

        return automation.gate(
            PendingActionType.CAPTURE_OUTCOME,
            payload,
            patrol,
            message=f"{patrol.name} resolves {token.name}: {outcome.value}",
        )

    # -------------------------------------------------------------------------
    # Bribery
    # -------------------------------------------------------------------------

    def perform_bribery(self, payload: dict[str, Any]) -> dict:
        """
        Settle a bribe offer.

        Rejected: the drawn outcome proceeds. Accepted: gold is taken, and
        the guard may still double-cross and jail the occupant.
        """
        resolved = self._resolve_payload(payload)
        if isinstance(resolved, dict):
            return resolved
        patrol, token = resolved
        actor = self._actor(token)
        if actor is None:
            error = MissingReference("actor", token.actor_id)
            self.ctx.warn(str(error))
            return {"success": False, "error": str(error)}

        settings = self.settings
        adapter = self.ctx.adapter
        amount = int(payload.get("bribe_amount", self.bribe_cost(patrol)))
        gold = adapter.get_actor_gold(actor)

        if "accepted" in payload:
            accepted = bool(payload["accepted"])
        elif payload.get("automated"):
            accepted = self.manager.automation.decide_bribery(patrol, amount, gold, settings.bribery_base_cost)
        else:
            accepted = gold >= amount and self.ctx.rng.random() * 100 < settings.bribery_chance

        if not accepted:
            self.ctx.notifier.info(f"{patrol.name} refuses the bribe from {token.name}")
            self.ctx.bus.emit(
                EventType.BRIBERY_RESOLVED,
                scene_id=patrol.scene_id,
                patrol_id=patrol.id,
                token_id=token.id,
                accepted=False,
            )
            result = self.execute_outcome(patrol, token, CaptureOutcome(payload["outcome"]), payload)
            result["bribe"] = "rejected"
            return result

        if "double_cross" in payload:
            double_cross = bool(payload["double_cross"])
        else:
            chance = settings.bribery_chance / 100 * settings.bribery_double_cross_fraction
            double_cross = self.ctx.rng.random() < chance

        taken = adapter.remove_actor_gold(actor, amount)
        self.ctx.world.save_actor(actor)
        steps: list = [RestoreCurrency(actor_id=actor.id, amount=taken)] if taken else []

        if double_cross:
            jailed = self.manager.jail.send_to_jail(actor.id, captured_by=patrol.id, token_id=token.id)
            if jailed.get("success"):
                steps.append(ReleaseFromJail(actor_id=actor.id))
                outcome = "bribe_betrayal"
                message = f"{patrol.name} took {taken} gp from {token.name} and jailed them anyway"
                extra: dict = {"jail_scene_id": jailed["jail_scene_id"]}
            else:
                combat = self.manager.combat.initiate_combat(patrol, token, {"bribe": "betrayal"})
                outcome = "bribe_betrayal"
                message = f"{patrol.name} took {taken} gp from {token.name} and attacked"
                extra = {"combat": combat}
        else:
            self.manager.reset_alert(patrol.id)
            outcome = "bribe_success"
            message = f"{patrol.name} accepted {taken} gp from {token.name}"
            extra = {}

        self.manager.detection.mark_resolved(patrol.id, token.id)
        self.ctx.notifier.info(message)
        entry = self.manager.automation.log_ai_decision(
            PendingActionType.BRIBERY.value,
            message,
            payload={
                "patrol_id": patrol.id,
                "token_id": token.id,
                "actor_id": actor.id,
                "amount": taken,
                "double_cross": double_cross,
                "automated": bool(payload.get("automated")),
            },
            undo=_single_undo(steps),
        )
        self.ctx.bus.emit(
            EventType.BRIBERY_RESOLVED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            token_id=token.id,
            accepted=True,
            double_cross=double_cross,
        )
        return {
            "success": True,
            "outcome": outcome,
            "bribe": "accepted",
            "amount": taken,
            "double_cross": double_cross,
            "log_entry_id": entry.id,
            **extra,
        }

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def perform_outcome(self, payload: dict[str, Any]) -> dict:
        resolved = self._resolve_payload(payload)
        if isinstance(resolved, dict):
            return resolved
        patrol, token = resolved
        return self.execute_outcome(patrol, token, CaptureOutcome(payload["outcome"]), payload)

    def execute_outcome(
        self,
        patrol: Patrol,
        token: Token,
        outcome: CaptureOutcome,
        payload: dict[str, Any] | None = None,
    ) -> dict:
        """Carry out one capture outcome and record it."""
        payload = payload or {}
        handlers = {
            CaptureOutcome.COMBAT: self._combat,
            CaptureOutcome.THEFT: self._theft,
            CaptureOutcome.RELOCATE: self._relocate,
            CaptureOutcome.DISREGARD: self._disregard,
            CaptureOutcome.JAIL: self._jail,
        }
        result, undo, message = handlers[outcome](patrol, token)
        self.manager.detection.mark_resolved(patrol.id, token.id)

        entry = self.manager.automation.log_ai_decision(
            PendingActionType.CAPTURE_OUTCOME.value,
            message,
            payload={
                "patrol_id": patrol.id,
                "token_id": token.id,
                "actor_id": token.actor_id,
                "scene_id": patrol.scene_id,
                "outcome": result.get("outcome", outcome.value),
                "draw": payload.get("draw"),
                "automated": bool(payload.get("automated")),
            },
            undo=undo,
        )
        self.ctx.bus.emit(
            EventType.CAPTURE_RESOLVED,
            scene_id=patrol.scene_id,
            patrol_id=patrol.id,
            token_id=token.id,
            outcome=result.get("outcome", outcome.value),
        )
        result.setdefault("outcome", outcome.value)
        result.setdefault("log_entry_id", entry.id)
        return result

    def _combat(self, patrol: Patrol, token: Token):
        result = self.manager.combat.initiate_combat(patrol, token)
        return result, None, f"{patrol.name} engaged {token.name} in combat"

    def _jail(self, patrol: Patrol, token: Token):
        if token.actor_id and self.settings.jail_enabled:
            jailed = self.manager.jail.send_to_jail(token.actor_id, captured_by=patrol.id, token_id=token.id)
            if jailed.get("success"):
                return (
                    {"success": True, "outcome": CaptureOutcome.JAIL.value, "jail_scene_id": jailed["jail_scene_id"]},
                    ReleaseFromJail(actor_id=token.actor_id),
                    f"{patrol.name} sent {token.name} to jail",
                )
            self.ctx.warn(f"Could not jail {token.name}: {jailed.get('error')}; falling back to combat")
        result = self.manager.combat.initiate_combat(patrol, token, {"fallback_from": "jail"})
        result["fallback_from"] = CaptureOutcome.JAIL.value
        return result, None, f"{patrol.name} could not jail {token.name} and attacked"

    def _disregard(self, patrol: Patrol, token: Token):
        self.manager.reset_alert(patrol.id)
        self.ctx.notifier.info(f"{patrol.name} lets {token.name} go")
        return (
            {"success": True, "outcome": CaptureOutcome.DISREGARD.value},
            None,
            f"{patrol.name} disregarded {token.name}",
        )

    def _relocate(self, patrol: Patrol, token: Token):
        """Move the occupant to a relocation point, a waypoint or the scene centre."""
        scene = self.ctx.world.get_scene(patrol.scene_id)
        rng = self.ctx.rng
        if scene is not None and scene.relocation_points:
            point = rng.choice(scene.relocation_points)
            destination = (point.x, point.y)
        else:
            waypoints = [w for w in self.manager.get_waypoints(patrol.scene_id) if not w.disabled]
            if waypoints:
                waypoint = rng.choice(waypoints)
                destination = (waypoint.x, waypoint.y)
            elif scene is not None:
                destination = (scene.width / 2, scene.height / 2)
            else:
                destination = (token.x, token.y)

        self.ctx.world.update_token(token.id, x=destination[0], y=destination[1])
        self.manager.reset_alert(patrol.id)
        self.ctx.notifier.info(f"{token.name} was escorted away by {patrol.name}")
        return (
            {"success": True, "outcome": CaptureOutcome.RELOCATE.value, "destination": destination},
            None,
            f"{patrol.name} relocated {token.name}",
        )

    # -------------------------------------------------------------------------
    # Theft
    # -------------------------------------------------------------------------

    def stealable_items(self, actor: Actor, category: str) -> list[dict]:
        return [
            item for item in actor.items
            if not is_quest_item(item) and item_category(item) == category
        ]

    def _pick_theft_target(self, actor: Actor) -> str:
        """Draw a category; fall back to currency when the drawn one is empty."""
        roll = self.ctx.rng.random() * 100
        upper = 0
        category = "currency"
        for name, weight in THEFT_TARGET_WEIGHTS:
            upper += weight
            if roll < upper:
                category = name
                break
        if category != "currency" and not self.stealable_items(actor, category):
            return "currency"
        return category

    def _theft(self, patrol: Patrol, token: Token):
        actor = self._actor(token)
        if actor is None:
            error = MissingReference("actor", token.actor_id)
            self.ctx.warn(f"{patrol.name} could not rob {token.name}: {error}")
            return (
                {"success": False, "outcome": CaptureOutcome.THEFT.value, "error": str(error)},
                None,
                f"{patrol.name} found nothing to steal from {token.name}",
            )

        adapter = self.ctx.adapter
        world = self.ctx.world
        holder = self._guard_holder(patrol)
        holder_id = holder.id if holder is not None else None
        category = self._pick_theft_target(actor)
        steps: list = []
        stolen: dict[str, Any] = {"gold": 0, "items": []}

        if category == "currency":
            gold = adapter.get_actor_gold(actor)
            amount = math.floor(gold * self.settings.theft_percent / 100)
            taken = adapter.remove_actor_gold(actor, amount) if amount else 0
            if taken:
                if holder is not None:
                    adapter.add_actor_gold(holder, taken)
                steps.append(RestoreCurrency(actor_id=actor.id, amount=taken, holder_id=holder_id))
            stolen["gold"] = taken
        else:
            candidates = self.stealable_items(actor, category)
            count = min(len(candidates), self.settings.theft_max_items)
            for item in self.ctx.rng.sample(candidates, count):
                removed = adapter.remove_item_from_actor(actor, item.get("id") or item.get("name"), 1)
                if removed is None:
                    continue
                if holder is not None:
                    adapter.restore_item_to_actor(holder, removed)
                steps.append(RestoreItem(
                    actor_id=actor.id,
                    item_id=str(removed.get("id") or removed.get("name")),
                    data=removed,
                    holder_id=holder_id,
                ))
                stolen["items"].append(removed.get("name"))

        world.save_actor(actor)
        if holder is not None:
            world.save_actor(holder)
        self.manager.reset_alert(patrol.id)

        if stolen["items"]:
            what = ", ".join(stolen["items"])
        else:
            what = f"{stolen['gold']} gp"
        self.ctx.notifier.info(f"{patrol.name} robbed {token.name} of {what}")
        return (
            {"success": True, "outcome": CaptureOutcome.THEFT.value, "category": category, "stolen": stolen},
            _single_undo(steps),
            f"{patrol.name} stole {what} from {token.name}",
        )
