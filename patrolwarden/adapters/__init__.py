"""
System adapter registry.

Selects an adapter by system id. Unknown ids fall back to the generic
adapter, which offers a reduced capability set.
"""

import logging
import random

from .base import AttackEstimate, Capability, SystemAdapter, get_path, set_path
from .cthulhu import CallOfCthulhuAdapter
from .cyberpunk import CyberpunkAdapter
from .dnd5e import Dnd5eAdapter
from .generic import GenericAdapter
from .pf2e import Pf2eAdapter
from .starfinder import StarfinderAdapter
from .swade import SwadeAdapter

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[SystemAdapter]] = {
    "generic": GenericAdapter,
    "dnd5e": Dnd5eAdapter,
    "pf2e": Pf2eAdapter,
    "swade": SwadeAdapter,
    "call-of-cthulhu": CallOfCthulhuAdapter,
    "sfrpg": StarfinderAdapter,
    "cyberpunk": CyberpunkAdapter,
}

# Systems sharing another system's data layout
SYSTEM_ALIASES: dict[str, str] = {
    "sw5e": "dnd5e",
    "a5e": "dnd5e",
    "coc7": "call-of-cthulhu",
    "cof": "call-of-cthulhu",
    "call_of_cthulhu": "call-of-cthulhu",
    "cthulhu": "call-of-cthulhu",
    "starfinder": "sfrpg",
    "cyberpunk-2020": "cyberpunk",
    "cyberpunk-red-core": "cyberpunk",
    "pf1": "generic",
    "demonlord": "generic",
    "worldbuilding": "generic",
}


def register_adapter(system_id: str, adapter_cls: type[SystemAdapter]) -> None:
    """Register (or replace) the adapter for a system id."""
    ADAPTERS[system_id] = adapter_cls


def resolve_system_id(system_id: str | None) -> str:
    system_id = (system_id or "generic").lower()
    if system_id in ADAPTERS:
        return system_id
    alias = SYSTEM_ALIASES.get(system_id)
    if alias in ADAPTERS:
        return alias
    logger.info(f"No adapter for system '{system_id}', using generic")
    return "generic"


def get_adapter(system_id: str | None = None, rng: random.Random | None = None) -> SystemAdapter:
    """Adapter instance for a system id."""
    return ADAPTERS[resolve_system_id(system_id)](rng=rng)


def capabilities_for(system_id: str | None) -> frozenset[Capability]:
    """Capabilities the adapter for `system_id` exposes."""
    return ADAPTERS[resolve_system_id(system_id)].capabilities


__all__ = [
    "ADAPTERS",
    "SYSTEM_ALIASES",
    "AttackEstimate",
    "CallOfCthulhuAdapter",
    "Capability",
    "CyberpunkAdapter",
    "Dnd5eAdapter",
    "GenericAdapter",
    "Pf2eAdapter",
    "StarfinderAdapter",
    "SwadeAdapter",
    "SystemAdapter",
    "capabilities_for",
    "get_adapter",
    "get_path",
    "register_adapter",
    "resolve_system_id",
    "set_path",
]
