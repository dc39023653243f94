"""
In-memory world.

Stands in for the host's token/actor/scene database in tests, in the CLI
and in headless simulation. World files are YAML or JSON documents with
`scenes`, `tokens` and `actors` lists.
"""

import json
from pathlib import Path
from typing import Callable

import yaml

from .schema import Actor, Scene, Token


class MemoryWorld:
    """Dict-backed World implementation."""

    def __init__(
        self,
        scenes: list[Scene] | None = None,
        tokens: list[Token] | None = None,
        actors: list[Actor] | None = None,
    ):
        self.scenes: dict[str, Scene] = {s.id: s for s in scenes or []}
        self.tokens: dict[str, Token] = {t.id: t for t in tokens or []}
        self.actors: dict[str, Actor] = {a.id: a for a in actors or []}
        self._token_deleted_hooks: list[Callable[[str], None]] = []

    # -------------------------------------------------------------------------
    # Loading / Saving
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryWorld":
        return cls(
            scenes=[Scene.model_validate(s) for s in data.get("scenes", [])],
            tokens=[Token.model_validate(t) for t in data.get("tokens", [])],
            actors=[Actor.model_validate(a) for a in data.get("actors", [])],
        )

    @classmethod
    def from_file(cls, path: Path | str) -> "MemoryWorld":
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return {
            "scenes": [s.model_dump(mode="json") for s in self.scenes.values()],
            "tokens": [t.model_dump(mode="json") for t in self.tokens.values()],
            "actors": [a.model_dump(mode="json") for a in self.actors.values()],
        }

    def save(self, path: Path | str) -> None:
        path = Path(path)
        if path.suffix in (".yaml", ".yml"):
            path.write_text(yaml.safe_dump(self.to_dict(), sort_keys=False), encoding="utf-8")
        else:
            path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    # -------------------------------------------------------------------------
    # Scenes
    # -------------------------------------------------------------------------

    def get_scene(self, scene_id: str) -> Scene | None:
        return self.scenes.get(scene_id)

    def get_scenes(self) -> list[Scene]:
        return list(self.scenes.values())

    def create_scene(self, scene: Scene) -> Scene:
        self.scenes[scene.id] = scene
        return scene

    def update_scene(self, scene_id: str, **changes) -> Scene | None:
        scene = self.scenes.get(scene_id)
        if scene is None:
            return None
        for key, value in changes.items():
            setattr(scene, key, value)
        return scene

    def delete_scene(self, scene_id: str) -> bool:
        if scene_id not in self.scenes:
            return False
        for token in self.get_tokens(scene_id):
            self.delete_token(token.id)
        del self.scenes[scene_id]
        return True

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def get_token(self, token_id: str) -> Token | None:
        return self.tokens.get(token_id)

    def get_tokens(self, scene_id: str) -> list[Token]:
        return [t for t in self.tokens.values() if t.scene_id == scene_id]

    def find_token_for_actor(self, actor_id: str, scene_id: str | None = None) -> Token | None:
        for token in self.tokens.values():
            if token.actor_id != actor_id:
                continue
            if scene_id is None or token.scene_id == scene_id:
                return token
        return None

    def create_token(self, token: Token) -> Token:
        self.tokens[token.id] = token
        return token

    def update_token(self, token_id: str, **changes) -> Token | None:
        token = self.tokens.get(token_id)
        if token is None:
            return None
        for key, value in changes.items():
            setattr(token, key, value)
        return token

    def delete_token(self, token_id: str) -> bool:
        if token_id not in self.tokens:
            return False
        del self.tokens[token_id]
        for hook in list(self._token_deleted_hooks):
            hook(token_id)
        return True

    def on_token_deleted(self, handler: Callable[[str], None]) -> None:
        if handler not in self._token_deleted_hooks:
            self._token_deleted_hooks.append(handler)

    # -------------------------------------------------------------------------
    # Actors
    # -------------------------------------------------------------------------

    def get_actor(self, actor_id: str) -> Actor | None:
        return self.actors.get(actor_id)

    def get_actors(self) -> list[Actor]:
        return list(self.actors.values())

    def add_actor(self, actor: Actor) -> Actor:
        self.actors[actor.id] = actor
        return actor

    def save_actor(self, actor: Actor) -> None:
        self.actors[actor.id] = actor
