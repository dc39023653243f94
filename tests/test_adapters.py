"""Tests for the system adapter registry."""

import random

import pytest

from patrolwarden.adapters import (
    CallOfCthulhuAdapter,
    Capability,
    CyberpunkAdapter,
    Dnd5eAdapter,
    GenericAdapter,
    Pf2eAdapter,
    StarfinderAdapter,
    SwadeAdapter,
    capabilities_for,
    get_adapter,
    resolve_system_id,
)
from patrolwarden.errors import MissingCapability
from patrolwarden.state import Actor, Token


def fighter() -> Actor:
    return Actor(
        id="a1",
        name="Fighter",
        data={"attributes": {"hp": {"value": 25, "max": 30}, "ac": {"value": 16}}, "currency": {"gp": 40}},
        items=[
            {"id": "w1", "name": "Club", "type": "weapon", "system": {"damage": {"parts": [["1d4"]]}}},
            {"id": "w2", "name": "Greataxe", "type": "weapon",
             "system": {"damage": {"parts": [["1d12+3"]]}, "attackBonus": 6}},
            {"id": "i1", "name": "Arrows", "type": "consumable", "system": {"quantity": 20}},
        ],
    )


class TestRegistry:
    """Adapter selection by system id."""

    def test_known_systems(self):
        """Registered ids map to their adapters."""
        assert isinstance(get_adapter("dnd5e"), Dnd5eAdapter)
        assert isinstance(get_adapter("pf2e"), Pf2eAdapter)

    def test_aliases_and_unknown_fall_back(self):
        """Aliased systems share an adapter; unknown ids get the generic one."""
        assert resolve_system_id("sw5e") == "dnd5e"
        assert resolve_system_id("DND5E") == "dnd5e"
        assert isinstance(get_adapter("homebrew"), GenericAdapter)
        assert isinstance(get_adapter(None), GenericAdapter)

    def test_other_systems_registered(self):
        """Sheet variants resolve to the matching adapter."""
        assert isinstance(get_adapter("swade"), SwadeAdapter)
        assert resolve_system_id("coc7") == "call-of-cthulhu"
        assert isinstance(get_adapter("CoC7"), CallOfCthulhuAdapter)
        assert isinstance(get_adapter("starfinder"), StarfinderAdapter)
        assert isinstance(get_adapter("cyberpunk-red-core"), CyberpunkAdapter)
        assert resolve_system_id("pf1") == "generic"

    def test_capability_sets_differ(self):
        """Each adapter exposes only the subset it implements."""
        assert Capability.ESTIMATE_BEST_ATTACK in capabilities_for("dnd5e")
        assert Capability.ESTIMATE_BEST_ATTACK not in capabilities_for("generic")
        assert Capability.ROLL_ITEM_USE not in capabilities_for("pf2e")


class TestCapabilities:
    """Optional capability calls."""

    def test_hp_and_ac(self):
        """HP, max HP and AC read from 5e paths."""
        adapter = Dnd5eAdapter()
        actor = fighter()
        assert adapter.get_actor_hp(actor) == 25
        assert adapter.get_actor_max_hp(actor) == 30
        assert adapter.get_actor_ac(actor) == 16

    def test_best_attack_picks_highest_average(self):
        """The weapon with the best average damage wins."""
        adapter = Dnd5eAdapter()
        token = Token(scene_id="s", actor_id="a1")
        estimate = adapter.estimate_best_attack_for_token(token, fighter())
        assert estimate.weapon["name"] == "Greataxe"
        assert estimate.avg_damage == round(9.5)
        assert estimate.attack_bonus == 6

    def test_missing_capability_raises(self):
        """Calling an undeclared capability raises MissingCapability."""
        adapter = GenericAdapter()
        assert not adapter.supports(Capability.ESTIMATE_BEST_ATTACK)
        with pytest.raises(MissingCapability):
            adapter.estimate_best_attack_for_token(Token(scene_id="s"), fighter())
        with pytest.raises(MissingCapability):
            Pf2eAdapter().roll_item_use({}, fighter())

    def test_damage_and_restore(self):
        """apply_damage floors at 0 and restore_damage sets HP back."""
        adapter = Dnd5eAdapter()
        actor = fighter()
        assert adapter.apply_damage(actor, 40) == {"before": 25, "after": 0}
        assert adapter.restore_damage(actor, 25) == {"before": 0, "after": 25}
        assert adapter.get_actor_hp(actor) == 25

    def test_roll_item_use_in_formula_range(self):
        """Rolled damage stays within the formula bounds."""
        adapter = Dnd5eAdapter(rng=random.Random(5))
        item = fighter().items[1]
        for _ in range(20):
            damage = adapter.roll_item_use(item, fighter())["damage"]
            assert 4 <= damage <= 15


class TestCoreHelpers:
    """Currency and item helpers every adapter has."""

    def test_gold_removal_is_capped(self):
        """Removing more gold than held takes only what is there."""
        adapter = GenericAdapter()
        actor = fighter()
        assert adapter.remove_actor_gold(actor, 100) == 40
        assert adapter.get_actor_gold(actor) == 0
        adapter.add_actor_gold(actor, 15)
        assert adapter.get_actor_gold(actor) == 15

    def test_remove_and_restore_item_stack(self):
        """Taking part of a stack leaves the rest; restoring merges back."""
        adapter = GenericAdapter()
        actor = fighter()
        removed = adapter.remove_item_from_actor(actor, "i1", 5)
        assert removed["system"]["quantity"] == 5
        assert adapter.get_item_quantity(actor.items[2]) == 15
        adapter.restore_item_to_actor(actor, removed)
        assert adapter.get_item_quantity(actor.items[2]) == 20

    def test_remove_missing_item(self):
        """Unknown items return None."""
        assert GenericAdapter().remove_item_from_actor(fighter(), "nope") is None

    def test_player_detection(self):
        """5e treats character-type actors as players."""
        assert Dnd5eAdapter().is_player_actor(Actor(type="character"))
        assert not GenericAdapter().is_player_actor(Actor(type="character"))

    def test_constitution_mod(self):
        """The CON modifier comes from the ability block, 0 when absent."""
        adapter = Dnd5eAdapter()
        actor = fighter()
        assert adapter.get_constitution_mod(actor) == 0
        actor.data["abilities"] = {"con": {"value": 16, "mod": 3}}
        assert adapter.get_constitution_mod(actor) == 3


class TestOtherSystems:
    """Adapters for non-d20 sheets."""

    def wild_card(self) -> Actor:
        return Actor(
            id="a-swade",
            name="Marshal",
            data={"status": {"wounds": {"value": 1, "max": 3}}, "stats": {"parry": {"value": 6}}},
            items=[
                {"id": "w1", "name": "Colt Peacemaker", "type": "weapon",
                 "system": {"damage": "2d6+1", "attack": 2}},
                {"id": "g1", "name": "Lasso", "type": "gear", "system": {}},
            ],
        )

    def test_swade_wounds_read_as_hp(self):
        """Three wound levels with one taken leaves two."""
        adapter = SwadeAdapter()
        actor = self.wild_card()
        assert adapter.get_actor_hp(actor) == 2
        assert adapter.get_actor_max_hp(actor) == 3
        assert adapter.get_actor_ac(actor) == 6

    def test_swade_damage_adds_wounds(self):
        adapter = SwadeAdapter()
        actor = self.wild_card()
        assert adapter.apply_damage(actor, 1) == {"before": 2, "after": 1}
        assert actor.data["status"]["wounds"]["value"] == 2
        adapter.restore_damage(actor, 3)
        assert actor.data["status"]["wounds"]["value"] == 0

    def test_swade_without_wounds_uses_hp(self):
        assert SwadeAdapter().get_actor_hp(fighter()) == 25

    def test_swade_best_attack(self):
        estimate = SwadeAdapter().estimate_best_attack_for_token(Token(scene_id="s"), self.wild_card())
        assert estimate.weapon["name"] == "Colt Peacemaker"
        assert estimate.avg_damage == 8
        assert estimate.attack_bonus == 2

    def test_cthulhu_status_hp(self):
        adapter = CallOfCthulhuAdapter()
        actor = Actor(data={"status": {"hp": {"value": 9, "max": 12}}})
        assert adapter.get_actor_hp(actor) == 9
        assert adapter.get_actor_max_hp(actor) == 12
        adapter.apply_damage(actor, 4)
        assert actor.data["status"]["hp"]["value"] == 5
        assert adapter.get_actor_ac(actor) == 10

    def test_cthulhu_melee_items(self):
        actor = Actor(items=[
            {"name": "Knife", "type": "melee", "system": {}},
            {"name": "Shotgun", "type": "item", "system": {"damage": "4d6"}},
            {"name": "Tome", "type": "book", "system": {}},
        ])
        names = [i["name"] for i in CallOfCthulhuAdapter().get_attack_items(actor)]
        assert names == ["Knife", "Shotgun"]

    def test_starfinder_defenses_ac(self):
        adapter = StarfinderAdapter()
        actor = Actor(data={"attributes": {"hp": {"value": 14, "max": 20}}, "defenses": {"ac": 17}})
        assert adapter.get_actor_hp(actor) == 14
        assert adapter.get_actor_ac(actor) == 17

    def test_cyberpunk_top_level_hp(self):
        adapter = CyberpunkAdapter()
        actor = Actor(
            data={"hp": {"value": 30, "max": 40}},
            items=[
                {"name": "Heavy Pistol", "type": "item", "system": {"weaponType": "pistol", "damage": "3d6"}},
                {"name": "Jacket", "type": "armor", "system": {}},
            ],
        )
        assert adapter.get_actor_hp(actor) == 30
        assert adapter.get_actor_max_hp(actor) == 40
        assert [i["name"] for i in adapter.get_attack_items(actor)] == ["Heavy Pistol"]
        adapter.apply_damage(actor, 5)
        assert actor.data["hp"]["value"] == 25
