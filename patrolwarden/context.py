"""
Explicit context passed to every component.

Holds the settings accessor, the world (token/actor resolver and scene
accessor), the event bus and the external collaborators: notifications,
telegraph rendering, macros, the clock and the random source.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

from .errors import MissingReference
from .state.event_bus import EventBus
from .state.schema import Actor, Scene, Token
from .state.settings import Settings

if TYPE_CHECKING:
    from .adapters.base import SystemAdapter

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Collaborator Protocols
# -----------------------------------------------------------------------------

@runtime_checkable
class World(Protocol):
    """Token/actor lookup and scene access provided by the host."""

    def get_scene(self, scene_id: str) -> Scene | None: ...
    def get_scenes(self) -> list[Scene]: ...
    def create_scene(self, scene: Scene) -> Scene: ...
    def update_scene(self, scene_id: str, **changes) -> Scene | None: ...
    def delete_scene(self, scene_id: str) -> bool: ...

    def get_token(self, token_id: str) -> Token | None: ...
    def get_tokens(self, scene_id: str) -> list[Token]: ...
    def find_token_for_actor(self, actor_id: str, scene_id: str | None = None) -> Token | None: ...
    def create_token(self, token: Token) -> Token: ...
    def update_token(self, token_id: str, **changes) -> Token | None: ...
    def delete_token(self, token_id: str) -> bool: ...
    def on_token_deleted(self, handler: Callable[[str], None]) -> None: ...

    def get_actor(self, actor_id: str) -> Actor | None: ...
    def get_actors(self) -> list[Actor]: ...
    def save_actor(self, actor: Actor) -> None: ...


class Notifier(Protocol):
    """Operator-facing messages."""

    def info(self, message: str) -> None: ...
    def warn(self, message: str) -> None: ...
    def whisper_gm(self, message: str) -> None: ...


class Telegraph(Protocol):
    """
    Visual pre-warning renderer.

    show_telegraph returns the seconds until the effect completes, or None
    when it cannot tell.
    """

    def show_telegraph(self, position: tuple[float, float], options: dict) -> float | None: ...
    def cancel_all(self) -> None: ...


class MacroRunner(Protocol):
    def run_macro(self, macro_ref: str, **context) -> bool: ...


# -----------------------------------------------------------------------------
# Default Implementations
# -----------------------------------------------------------------------------

class LogNotifier:
    """Routes operator messages to the log."""

    def info(self, message: str) -> None:
        logger.info(message)

    def warn(self, message: str) -> None:
        logger.warning(message)

    def whisper_gm(self, message: str) -> None:
        logger.info(f"[GM] {message}")


class MemoryNotifier:
    """Records messages for tests and headless runs."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warn(self, message: str) -> None:
        self.messages.append(("warn", message))

    def whisper_gm(self, message: str) -> None:
        self.messages.append(("gm", message))

    def of_level(self, level: str) -> list[str]:
        return [m for lvl, m in self.messages if lvl == level]

    @property
    def warnings(self) -> list[str]:
        return self.of_level("warn")


class RecordingTelegraph:
    """Keeps the last requests; renders nothing."""

    def __init__(self, limit: int = 50):
        self.requests: list[tuple[tuple[float, float], dict]] = []
        self._limit = limit

    def show_telegraph(self, position: tuple[float, float], options: dict) -> float | None:
        self.requests.append((position, dict(options)))
        if len(self.requests) > self._limit:
            self.requests = self.requests[-self._limit :]
        return None

    def cancel_all(self) -> None:
        self.requests.clear()


class MemoryMacroRunner:
    """Macros registered as plain callables."""

    def __init__(self, macros: dict[str, Callable[..., object]] | None = None):
        self.macros = dict(macros or {})

    def run_macro(self, macro_ref: str, **context) -> bool:
        macro = self.macros.get(macro_ref)
        if macro is None:
            raise MissingReference("macro", macro_ref)
        macro(**context)
        return True


class ManualClock:
    """Clock advanced by hand, for simulation and tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> float:
        self.current += seconds
        return self.current


# -----------------------------------------------------------------------------
# Context
# -----------------------------------------------------------------------------

@dataclass
class PatrolContext:
    """Everything a component may touch outside its own state."""
    world: World
    settings: Settings = field(default_factory=Settings)
    system_id: str = "generic"
    bus: EventBus = field(default_factory=EventBus)
    notifier: Notifier = field(default_factory=LogNotifier)
    telegraph: Telegraph = field(default_factory=RecordingTelegraph)
    macros: MacroRunner | None = None
    clock: Callable[[], float] = time.time
    rng: random.Random = field(default_factory=random.Random)
    _adapter: "SystemAdapter | None" = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.settings.attach(self.bus, self.notifier)

    def now(self) -> float:
        return self.clock()

    @property
    def adapter(self) -> "SystemAdapter":
        """System adapter for `system_id` (resolved once)."""
        if self._adapter is None:
            from .adapters import get_adapter
            self._adapter = get_adapter(self.system_id, rng=self.rng)
        return self._adapter

    def warn(self, message: str) -> None:
        """Operator-visible warning, also logged."""
        logger.warning(message)
        self.notifier.warn(message)
