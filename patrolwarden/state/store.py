"""
Patrol storage abstraction.

Separates persistence from domain logic for testability. Patrols and
waypoints are stored per scene; the AI log, pending queue and jail
registry share one global document.
"""

import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from .schema import GlobalState, SceneState

logger = logging.getLogger(__name__)


@runtime_checkable
class PatrolStore(Protocol):
    """
    Abstract storage interface.

    Implementations:
    - JsonPatrolStore: File-based persistence (production)
    - MemoryPatrolStore: In-memory storage (testing)
    """

    def save_scene(self, state: SceneState) -> None:
        """Persist one scene's patrols and waypoints."""
        ...

    def load_scene(self, scene_id: str) -> SceneState | None:
        """Load a scene's state. Returns None if not stored."""
        ...

    def delete_scene(self, scene_id: str) -> bool:
        """Delete a scene's state. Returns True if deleted."""
        ...

    def list_scenes(self) -> list[str]:
        """Ids of all stored scenes."""
        ...

    def save_global(self, state: GlobalState) -> None:
        """Persist the global document."""
        ...

    def load_global(self) -> GlobalState:
        """Load the global document (empty if none stored)."""
        ...


class JsonPatrolStore:
    """
    File-based storage using JSON.

    Layout:
        <data_dir>/scenes/<scene_id>.json
        <data_dir>/global.json
    The previous version of each file is kept as .json.bak.
    """

    def __init__(self, data_dir: Path | str = "patrol_data"):
        self.data_dir = Path(data_dir)
        self.scenes_dir = self.data_dir / "scenes"
        self.scenes_dir.mkdir(parents=True, exist_ok=True)
        self.global_file = self.data_dir / "global.json"

    def _write(self, path: Path, text: str) -> None:
        if path.exists():
            backup = path.with_suffix(".json.bak")
            backup.write_text(path.read_text(encoding="utf-8"), encoding="utf-8")
        path.write_text(text, encoding="utf-8")

    def save_scene(self, state: SceneState) -> None:
        self._write(self.scenes_dir / f"{state.scene_id}.json", state.model_dump_json(indent=2))

    def load_scene(self, scene_id: str) -> SceneState | None:
        scene_file = self.scenes_dir / f"{scene_id}.json"
        if not scene_file.exists():
            return None
        try:
            return SceneState.model_validate(json.loads(scene_file.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load scene state {scene_file.name}: {e}")
            return None

    def delete_scene(self, scene_id: str) -> bool:
        scene_file = self.scenes_dir / f"{scene_id}.json"
        if scene_file.exists():
            scene_file.unlink()
            return True
        return False

    def list_scenes(self) -> list[str]:
        return sorted(f.stem for f in self.scenes_dir.glob("*.json"))

    def save_global(self, state: GlobalState) -> None:
        self._write(self.global_file, state.model_dump_json(indent=2))

    def load_global(self) -> GlobalState:
        if not self.global_file.exists():
            return GlobalState()
        try:
            return GlobalState.model_validate(json.loads(self.global_file.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load global state, starting empty: {e}")
            return GlobalState()


class MemoryPatrolStore:
    """
    In-memory storage for testing.

    No file I/O - all data lives in memory.
    """

    def __init__(self):
        self.scenes: dict[str, SceneState] = {}
        self.global_state = GlobalState()
        self.save_count = 0

    def save_scene(self, state: SceneState) -> None:
        self.scenes[state.scene_id] = state
        self.save_count += 1

    def load_scene(self, scene_id: str) -> SceneState | None:
        return self.scenes.get(scene_id)

    def delete_scene(self, scene_id: str) -> bool:
        if scene_id in self.scenes:
            del self.scenes[scene_id]
            return True
        return False

    def list_scenes(self) -> list[str]:
        return sorted(self.scenes)

    def save_global(self, state: GlobalState) -> None:
        self.global_state = state
        self.save_count += 1

    def load_global(self) -> GlobalState:
        return self.global_state

    def clear(self) -> None:
        self.scenes.clear()
        self.global_state = GlobalState()
