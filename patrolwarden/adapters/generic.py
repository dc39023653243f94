"""Fallback adapter for systems without a dedicated bridge."""

from .base import Capability, SystemAdapter


class GenericAdapter(SystemAdapter):
    """
    Best-effort HP/AC/damage over common data layouts.

    Attack estimation is not offered: without a known weapon model the
    auto-resolve path is skipped and combat is left to the table.
    """

    system_id = "generic"
    capabilities = frozenset({
        Capability.GET_ACTOR_HP,
        Capability.GET_ACTOR_MAX_HP,
        Capability.GET_ACTOR_AC,
        Capability.GET_ATTACK_ITEMS,
        Capability.APPLY_DAMAGE,
        Capability.RESTORE_DAMAGE,
    })
