"""
Pytest fixtures for patrolwarden tests.

Provides an in-memory world, stores and a manual clock so every test runs
deterministically without touching disk.
"""

import random

import pytest

from patrolwarden.context import ManualClock, MemoryMacroRunner, MemoryNotifier, PatrolContext, RecordingTelegraph
from patrolwarden.state import (
    Actor,
    MemoryPatrolStore,
    MemorySettingsStore,
    MemoryWorld,
    PatrolManager,
    Scene,
    Settings,
    Token,
    TokenDisposition,
)

SCENE_ID = "scene-1"


def weapon(item_id: str, name: str, formula: str, bonus: int = 0) -> dict:
    return {
        "id": item_id,
        "name": name,
        "type": "weapon",
        "system": {"damage": {"parts": [[formula, "slashing"]]}, "attackBonus": bonus, "quantity": 1},
    }


def dnd_actor(actor_id: str, name: str, hp: int, ac: int, gold: int = 0, **fields) -> Actor:
    return Actor(
        id=actor_id,
        name=name,
        data={
            "attributes": {"hp": {"value": hp, "max": hp}, "ac": {"value": ac}},
            "currency": {"gp": gold},
        },
        **fields,
    )


@pytest.fixture
def clock():
    """Manual clock starting at a fixed epoch."""
    return ManualClock(1_000_000.0)


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def world():
    """One 100px-grid scene with a guard, a player hero and an NPC bandit."""
    guard = dnd_actor("a-guard", "Guard", hp=30, ac=14, items=[weapon("w-sword", "Longsword", "1d8+3", 5)])
    hero = dnd_actor(
        "a-hero", "Hero", hp=20, ac=12, gold=200,
        type="character", is_player=True, level=4,
        items=[
            weapon("w-dagger", "Dagger", "1d4+2", 4),
            {"id": "i-rope", "name": "Rope", "type": "loot", "system": {"quantity": 2}},
            {"id": "i-potion", "name": "Potion", "type": "consumable", "system": {"quantity": 3}},
            {"id": "i-key", "name": "Crypt Key", "type": "loot", "system": {"quantity": 1}},
            {"id": "i-bless", "name": "Bless", "type": "spell", "system": {}},
        ],
    )
    bandit = dnd_actor("a-bandit", "Bandit", hp=8, ac=10, gold=10, items=[weapon("w-knife", "Knife", "1d4")])

    return MemoryWorld(
        scenes=[Scene(id=SCENE_ID, name="Courtyard", grid_size=100, width=2000, height=1000)],
        tokens=[
            Token(id="t-guard", scene_id=SCENE_ID, name="Guard", x=0, y=0,
                  actor_id="a-guard", disposition=TokenDisposition.HOSTILE),
            Token(id="t-hero", scene_id=SCENE_ID, name="Hero", x=150, y=0,
                  actor_id="a-hero", disposition=TokenDisposition.FRIENDLY, player_owned=True),
        ],
        actors=[guard, hero, bandit],
    )


@pytest.fixture
def settings_store():
    return MemorySettingsStore()


@pytest.fixture
def settings(settings_store):
    return Settings(settings_store)


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def telegraph():
    return RecordingTelegraph()


@pytest.fixture
def macros():
    return MemoryMacroRunner()


@pytest.fixture
def ctx(world, settings, notifier, telegraph, macros, clock, rng):
    """Context for the dnd5e adapter."""
    return PatrolContext(
        world=world,
        settings=settings,
        system_id="dnd5e",
        notifier=notifier,
        telegraph=telegraph,
        macros=macros,
        clock=clock,
        rng=rng,
    )


@pytest.fixture
def memory_store():
    """In-memory patrol store for testing."""
    return MemoryPatrolStore()


@pytest.fixture
def manager(ctx, memory_store):
    """Patrol manager with in-memory store."""
    return PatrolManager(ctx, memory_store)


@pytest.fixture
def waypoints(manager):
    """Two waypoints 10 squares apart."""
    return [
        manager.create_waypoint(SCENE_ID, 0, 0, name="Gate"),
        manager.create_waypoint(SCENE_ID, 1000, 0, name="Tower"),
    ]


@pytest.fixture
def patrol(manager, waypoints):
    """Sequential blink patrol with exact timings."""
    return manager.create_patrol(
        name="Night Watch",
        scene_id=SCENE_ID,
        token_id="t-guard",
        waypoint_ids=[w.id for w in waypoints],
        blink_pattern="sequential",
        appear_duration=3.0,
        disappear_duration=2.0,
        timing_variance=0,
    )


@pytest.fixture
def add_bandit(world):
    """Place the NPC bandit next to the gate."""
    def _add(x: float = 100, y: float = 0) -> Token:
        return world.create_token(Token(
            id="t-bandit", scene_id=SCENE_ID, name="Bandit", x=x, y=y,
            actor_id="a-bandit", disposition=TokenDisposition.FRIENDLY,
        ))
    return _add


def set_weights(settings, **weights):
    """Save outcome weights, zeroing unnamed outcomes."""
    full = {"combat": 0, "theft": 0, "relocate": 0, "disregard": 0, "jail": 0}
    full.update(weights)
    result = settings.save_capture_weights(full)
    assert result["success"], result
    return result
