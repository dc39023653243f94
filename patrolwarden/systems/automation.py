"""
AI automation queue.

Gates automatable decisions on the effective tri-state flags, keeps the
pending approval queue and the AI audit log, and reverses or replays
logged decisions.

Effective flags are resolved on every call; nothing is cached, so a
patrol set to INHERIT always follows the current global default.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..errors import ApprovalRequired, MissingReference, PartialUndoFailure, PatrolError, UndoUnavailable
from ..state.event_bus import EventType
from ..state.schema import (
    AiLogEntry,
    Aggressiveness,
    CaptureOutcome,
    CaptureOutcomeWeights,
    Patrol,
    PendingAction,
    PendingActionType,
    TriState,
    resolve,
    undo_steps,
)
from .sampler import bias_weights, draw_outcome
from .undo import reverse_step

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)

AUTOMATION_FLAGS = ("automate_combat", "automate_decisions", "automate_require_approval")

# Bribe acceptance threshold multiplier by aggressiveness
BRIBE_THRESHOLD_FACTOR: dict[Aggressiveness, float] = {
    Aggressiveness.AGGRESSIVE: 0.6,
    Aggressiveness.NORMAL: 1.0,
    Aggressiveness.CONSERVATIVE: 1.1,
}

REPLAYABLE_TYPES = {PendingActionType.PERFORM_ACTION.value}


class AutomationSystem:
    """
    Decision gate, pending queue and audit log.

    Requires a PatrolManager for persistence and for the systems that
    perform queued actions.
    """

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager

    @property
    def ctx(self):
        return self.manager.ctx

    @property
    def _state(self):
        return self.manager.global_state

    def _timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.ctx.now())

    # -------------------------------------------------------------------------
    # Effective flags
    # -------------------------------------------------------------------------

    def is_enabled(self, patrol: Patrol | None, flag: str) -> bool:
        """Resolve a patrol override against the current global default."""
        if flag not in AUTOMATION_FLAGS:
            raise ValueError(f"Unknown automation flag: {flag}")
        local = getattr(patrol, flag) if patrol is not None else TriState.INHERIT
        return resolve(local, getattr(self.ctx.settings, flag))

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    def perform(self, action_type: PendingActionType, payload: dict[str, Any]) -> dict:
        """
        Carry out an action by type.

        A PatrolError from the performer is reported to the operator and
        returned as a failed result.
        """
        action_type = PendingActionType(action_type)
        performers = {
            PendingActionType.PERFORM_ACTION: self.manager.combat.perform_action,
            PendingActionType.BRIBERY: self.manager.capture.perform_bribery,
            PendingActionType.CAPTURE_OUTCOME: self.manager.capture.perform_outcome,
            PendingActionType.AUTO_RESOLVE_COMBAT: self.manager.combat.perform_auto_resolve,
        }
        try:
            return performers[action_type](payload)
        except PatrolError as e:
            logger.warning(f"{action_type.value} failed: {e}")
            self.ctx.warn(f"{action_type.value} failed: {e}")
            return {"success": False, "error": str(e)}

    def gate(
        self,
        action_type: PendingActionType,
        payload: dict[str, Any],
        patrol: Patrol | None,
        flag: str = "automate_decisions",
        message: str = "",
    ) -> dict:
        """
        Route a decision through the automation flags.

        - flag disabled: performed now by the operator flow
        - flag enabled, approval required: queued, ApprovalRequired returned
        - flag enabled: performed now as an automated decision
        """
        payload = dict(payload)
        if not self.is_enabled(patrol, flag):
            payload["automated"] = False
            return self.perform(action_type, payload)

        if self.is_enabled(patrol, "automate_require_approval"):
            pending = self.queue_pending(
                action_type,
                payload,
                patrol_id=patrol.id if patrol else None,
                message=message,
            )
            return ApprovalRequired(
                pending_id=pending.id,
                action_type=pending.type.value,
                patrol_id=pending.patrol_id,
            ).to_result()

        payload["automated"] = True
        return self.perform(action_type, payload)

    # -------------------------------------------------------------------------
    # Pending queue
    # -------------------------------------------------------------------------

    def queue_pending(
        self,
        action_type: PendingActionType,
        payload: dict[str, Any],
        patrol_id: str | None = None,
        message: str = "",
    ) -> PendingAction:
        """Append to the queue, evicting the oldest entries past the limit."""
        pending = PendingAction(
            type=action_type,
            payload=dict(payload),
            patrol_id=patrol_id,
            message=message or f"{PendingActionType(action_type).value} awaiting approval",
            timestamp=self._timestamp(),
        )
        queue = self._state.pending
        queue.append(pending)

        overflow = len(queue) - self.ctx.settings.ai_pending_max_entries
        if overflow > 0:
            evicted = queue[:overflow]
            del queue[:overflow]
            for old in evicted:
                logger.warning(f"Pending queue full; evicted {old.type.value} {old.id}")

        self.manager.save_global()
        self.ctx.bus.emit(
            EventType.AI_PENDING_QUEUED,
            pending_id=pending.id,
            type=pending.type.value,
            patrol_id=patrol_id,
        )
        self.ctx.notifier.whisper_gm(f"Approval needed: {pending.message}")
        return pending

    def get_pending_actions(self) -> list[PendingAction]:
        return list(self._state.pending)

    def has_pending_for(self, patrol_id: str) -> bool:
        return any(p.patrol_id == patrol_id for p in self._state.pending)

    def pop_pending_action(self, index: int = 0) -> PendingAction | None:
        """Remove and return the pending action at `index` (None if absent)."""
        queue = self._state.pending
        if not -len(queue) <= index < len(queue):
            return None
        pending = queue.pop(index)
        self.manager.save_global()
        return pending

    def approve_pending(self, index: int = 0, **overrides) -> dict:
        """Pop one pending action and perform it exactly once."""
        pending = self.pop_pending_action(index)
        if pending is None:
            return {"success": False, "error": f"No pending action at index {index}"}

        payload = {**pending.payload, **overrides, "automated": True, "approved": True}
        self.ctx.bus.emit(EventType.AI_PENDING_APPROVED, pending_id=pending.id, type=pending.type.value)
        logger.info(f"Approved pending {pending.type.value} {pending.id}")
        result = self.perform(pending.type, payload)
        result.setdefault("pending_id", pending.id)
        if not result.get("success") and "log_entry_id" not in result:
            # Keep a record of the approved decision that could not be carried out
            entry = self.log_ai_decision(
                "pendingFailed",
                f"Approved {pending.type.value} failed: {result.get('error', 'unknown error')}",
                payload={
                    "pending_id": pending.id,
                    "pending_type": pending.type.value,
                    "patrol_id": pending.patrol_id,
                    "payload": pending.payload,
                },
            )
            result["log_entry_id"] = entry.id
        return result

    def reject_pending(self, index: int = 0, reason: str = "") -> dict:
        """Pop one pending action without performing it."""
        pending = self.pop_pending_action(index)
        if pending is None:
            return {"success": False, "error": f"No pending action at index {index}"}

        self.log_ai_decision(
            "pendingRejected",
            f"Rejected {pending.type.value}" + (f": {reason}" if reason else ""),
            payload={
                "pending_id": pending.id,
                "pending_type": pending.type.value,
                "patrol_id": pending.patrol_id,
                "payload": pending.payload,
            },
        )
        self.ctx.bus.emit(EventType.AI_PENDING_REJECTED, pending_id=pending.id, type=pending.type.value)
        return {"success": True, "rejected": pending.id, "type": pending.type.value}

    # -------------------------------------------------------------------------
    # Audit log
    # -------------------------------------------------------------------------

    def log_ai_decision(
        self,
        entry_type: str | AiLogEntry,
        message: str = "",
        payload: dict[str, Any] | None = None,
        undo=None,
    ) -> AiLogEntry:
        """Append to the AI log, evicting the oldest entries past the limit."""
        if isinstance(entry_type, AiLogEntry):
            entry = entry_type
        else:
            entry = AiLogEntry(
                type=entry_type,
                message=message,
                payload=dict(payload or {}),
                undo=undo,
                timestamp=self._timestamp(),
            )
        log = self._state.ai_log
        log.append(entry)
        limit = self.ctx.settings.ai_log_max_entries
        overflow = len(log) - limit
        if overflow > 0:
            for old in log[:overflow]:
                self._state.undo_progress.pop(old.id, None)
            del log[:overflow]
        self._trim_undone(limit)

        self.manager.save_global()
        self.ctx.bus.emit(EventType.AI_DECISION_LOGGED, entry_id=entry.id, type=entry.type)
        logger.info(f"AI log [{entry.type}] {entry.message}")
        return entry

    def _trim_undone(self, limit: int) -> None:
        """Remember at most `limit` undone ids, newest kept."""
        undone = self._state.undone_ids
        if len(undone) > limit:
            del undone[:-limit]

    def get_ai_log(self, limit: int | None = None) -> list[AiLogEntry]:
        """Log entries, oldest first."""
        log = list(self._state.ai_log)
        return log[-limit:] if limit else log

    def get_log_entry(self, entry_id: str) -> AiLogEntry | None:
        for entry in self._state.ai_log:
            if entry.id == entry_id:
                return entry
        return None

    # -------------------------------------------------------------------------
    # Undo / Replay
    # -------------------------------------------------------------------------

    def undo_ai_log_entry(self, entry: AiLogEntry | str) -> dict:
        """
        Reverse a logged decision.

        Succeeds at most once per entry. Steps of a multi-effect undo that
        already went through are not reversed again on retry.
        """
        entry_id = entry.id if isinstance(entry, AiLogEntry) else entry
        if entry_id in self._state.undone_ids:
            return {"success": False, "reason": "already_undone", "entry_id": entry_id}

        found = self.get_log_entry(entry_id)
        if found is None:
            return {"success": False, "error": str(MissingReference("log entry", entry_id)), "entry_id": entry_id}

        if found.undo is None:
            error = UndoUnavailable(entry_id)
            self.ctx.warn(str(error))
            return {"success": False, "reason": "unavailable", "error": str(error), "entry_id": entry_id}

        steps = undo_steps(found.undo)
        done = set(self._state.undo_progress.get(entry_id, []))
        errors: list[str] = []
        for index, step in enumerate(steps):
            if index in done:
                continue
            try:
                reverse_step(self.manager, step)
            except Exception as e:
                logger.warning(f"Undo step {step.kind} of {entry_id} failed: {e}")
                errors.append(f"{step.kind}: {e}")
                continue
            done.add(index)

        if errors:
            self._state.undo_progress[entry_id] = sorted(done)
            self.manager.save_global()
            failure = PartialUndoFailure(errors)
            self.ctx.warn(str(failure))
            return {"success": False, "errors": errors, "entry_id": entry_id}

        self._state.ai_log = [e for e in self._state.ai_log if e.id != entry_id]
        self._state.undo_progress.pop(entry_id, None)
        self._state.undone_ids.append(entry_id)
        self._trim_undone(self.ctx.settings.ai_log_max_entries)
        self.manager.save_global()
        self.ctx.bus.emit(EventType.AI_UNDO, entry_id=entry_id, type=found.type)
        self.ctx.notifier.info(f"Undid {found.type}: {found.message}")
        return {"success": True, "entry_id": entry_id, "steps": len(steps)}

    def replay_ai_log_entry(self, entry: AiLogEntry | str) -> dict:
        """
        Re-run a performAction entry against current token references.

        Fails before any effect when either side cannot be resolved.
        """
        entry_id = entry.id if isinstance(entry, AiLogEntry) else entry
        found = self.get_log_entry(entry_id)
        if found is None:
            return {"success": False, "error": str(MissingReference("log entry", entry_id))}
        if found.type not in REPLAYABLE_TYPES:
            return {"success": False, "error": f"Entries of type {found.type} cannot be replayed"}

        payload = found.payload
        world = self.ctx.world
        scene_id = payload.get("scene_id")
        resolved = {}
        for side in ("attacker", "target"):
            actor_id = payload.get(f"{side}_actor_id")
            token = world.find_token_for_actor(actor_id, scene_id) if actor_id else None
            if token is None and payload.get(f"{side}_token_id"):
                token = world.get_token(payload[f"{side}_token_id"])
            if token is None:
                error = MissingReference(f"{side} token", actor_id or payload.get(f"{side}_token_id"))
                self.ctx.warn(f"Replay of {entry_id} failed: {error}")
                return {"success": False, "error": str(error)}
            resolved[side] = token

        return self.manager.combat.perform_action({
            "attacker_token_id": resolved["attacker"].id,
            "target_token_id": resolved["target"].id,
            "patrol_id": payload.get("patrol_id"),
            "replay_of": entry_id,
            "automated": True,
        })

    # -------------------------------------------------------------------------
    # Heuristics
    # -------------------------------------------------------------------------

    def decide_bribery(self, patrol: Patrol, bribe_amount: int, player_gold: int, base_cost: int) -> bool:
        """
        Accept when the occupant can pay and the bribe clears the threshold,
        then roll the accept chance.
        """
        threshold = base_cost * 0.75 * BRIBE_THRESHOLD_FACTOR[patrol.aggressiveness]
        if player_gold < bribe_amount or bribe_amount < threshold:
            return False
        return self.ctx.rng.random() * 100 < self.ctx.settings.bribery_chance

    def decide_capture_outcome(
        self,
        patrol: Patrol,
        weights: CaptureOutcomeWeights | None = None,
    ) -> tuple[CaptureOutcome, float]:
        """Weighted draw with combat/theft biased by aggressiveness."""
        weights = weights or self.ctx.settings.capture_outcome_weights
        return draw_outcome(bias_weights(weights, patrol.aggressiveness), self.ctx.rng)

    @staticmethod
    def decide_combat_action(hp: int | None, max_hp: int | None, enemies: int = 1) -> str:
        """'flee' below 20% HP, 'defend' below 40% against 3+, else 'attack'."""
        if hp is None or not max_hp:
            ratio = 1.0
        else:
            ratio = hp / max_hp
        if ratio < 0.2:
            return "flee"
        if ratio < 0.4 and enemies > 2:
            return "defend"
        return "attack"
