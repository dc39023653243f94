"""
Undo descriptor reversal.

Each descriptor kind has one reverser. A reverser either completes or
raises; the automation queue records which steps of a composite undo
already went through.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from ..adapters.base import Capability
from ..errors import MissingReference, PatrolError
from ..state.schema import (
    Actor,
    ReleaseFromJail,
    Reinstate,
    RestoreCurrency,
    RestoreHp,
    RestoreItem,
)

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)


def _actor(manager: "PatrolManager", actor_id: str | None) -> Actor:
    actor = manager.ctx.world.get_actor(actor_id) if actor_id else None
    if actor is None:
        raise MissingReference("actor", actor_id)
    return actor


def _restore_currency(manager: "PatrolManager", step: RestoreCurrency) -> None:
    world, adapter = manager.ctx.world, manager.ctx.adapter
    actor = _actor(manager, step.actor_id)
    if step.holder_id:
        holder = world.get_actor(step.holder_id)
        if holder is not None:
            adapter.remove_actor_gold(holder, step.amount)
            world.save_actor(holder)
    adapter.add_actor_gold(actor, step.amount)
    world.save_actor(actor)


def _restore_item(manager: "PatrolManager", step: RestoreItem) -> None:
    world, adapter = manager.ctx.world, manager.ctx.adapter
    actor = _actor(manager, step.actor_id)
    if step.holder_id:
        holder = world.get_actor(step.holder_id)
        if holder is not None:
            adapter.remove_item_from_actor(
                holder,
                step.data.get("name", step.item_id),
                adapter.get_item_quantity(step.data),
            )
            world.save_actor(holder)
    adapter.restore_item_to_actor(actor, step.data)
    world.save_actor(actor)


def _set_hp(manager: "PatrolManager", actor: Actor, value: int) -> None:
    adapter = manager.ctx.adapter
    if adapter.supports(Capability.RESTORE_DAMAGE):
        adapter.restore_damage(actor, value)
    else:
        adapter.set_actor_hp(actor, value)
    manager.ctx.world.save_actor(actor)


def _restore_hp(manager: "PatrolManager", step: RestoreHp) -> None:
    _set_hp(manager, _actor(manager, step.actor_id), step.before)


def _reinstate(manager: "PatrolManager", step: Reinstate) -> None:
    world = manager.ctx.world
    token = step.token
    if world.get_token(token.id) is None:
        world.create_token(token.model_copy(update={"hidden": False}))
    else:
        world.update_token(token.id, hidden=False, x=token.x, y=token.y)
    if step.actor_id and step.hp_before is not None:
        _set_hp(manager, _actor(manager, step.actor_id), step.hp_before)


def _release_from_jail(manager: "PatrolManager", step: ReleaseFromJail) -> None:
    result = manager.jail.release_prisoner(step.actor_id, return_to_original=True)
    if not result.get("success"):
        raise PatrolError(result.get("error", f"could not release {step.actor_id}"))


REVERSERS: dict[type, Callable] = {
    RestoreCurrency: _restore_currency,
    RestoreItem: _restore_item,
    RestoreHp: _restore_hp,
    Reinstate: _reinstate,
    ReleaseFromJail: _release_from_jail,
}


def reverse_step(manager: "PatrolManager", step) -> None:
    """Reverse a single undo step; raises when it cannot."""
    reverser = REVERSERS.get(type(step))
    if reverser is None:
        raise ValueError(f"No reverser for undo step {type(step).__name__}")
    reverser(manager, step)
    logger.debug(f"Reversed {step.kind} step")
