"""
Settings model and persistence.

Keys are camelCase on disk and in get_setting(), snake_case as attributes.
Every write goes through validation; a persisted value that fails
validation is dropped back to its default with an operator warning.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..errors import ConfigurationInvalid
from .event_bus import EventType
from .schema import (
    BlinkPattern,
    CaptureOutcomeWeights,
    DEFAULT_CAPTURE_WEIGHTS,
    DetectionAction,
    PatrolMode,
)

if TYPE_CHECKING:
    from ..context import Notifier
    from .event_bus import EventBus

logger = logging.getLogger(__name__)


class SightCheckMethod(str, Enum):
    RAY = "ray"        # Range plus wall intersection
    RADIUS = "radius"  # Range only


class PatrolSettings(BaseModel):
    """Global configuration. Defaults match a fresh world."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Patrol defaults
    default_patrol_mode: PatrolMode = PatrolMode.BLINK
    default_blink_pattern: BlinkPattern = BlinkPattern.RANDOM
    default_appear_duration: float = Field(default=3.0, gt=0)
    default_disappear_duration: float = Field(default=2.0, gt=0)
    timing_variance: int = Field(default=25, ge=0, le=100)
    max_active_patrols: int = Field(default=20, ge=1)
    update_interval: int = Field(default=500, ge=50)  # ms

    # Detection
    enable_detection: bool = True
    default_detection_range: float = Field(default=5, ge=0)  # Grid units
    detection_trigger: DetectionAction = DetectionAction.NOTIFY
    sight_check_method: SightCheckMethod = SightCheckMethod.RAY
    detect_hidden_players: bool = False
    detect_invisible: bool = False
    detect_npcs: bool = False
    detection_cooldown: float = Field(default=10.0, ge=0)  # Seconds
    alert_radius: float = Field(default=500, ge=0)  # Pixels

    # Telegraph
    telegraph_duration: int = Field(default=1500, ge=0)  # ms
    telegraph_color: str = "#ff4444"
    telegraph_style: str = "ripple"

    # Automation
    automate_combat: bool = False
    automate_decisions: bool = False
    automate_require_approval: bool = False
    auto_resolve_affects_players: bool = False
    ai_log_max_entries: int = Field(default=200, ge=1)
    ai_pending_max_entries: int = Field(default=100, ge=1)

    # Capture
    capture_enabled: bool = True
    capture_range: float = Field(default=2, ge=0)  # Grid units
    capture_outcome_weights: CaptureOutcomeWeights = Field(default_factory=CaptureOutcomeWeights)
    theft_max_items: int = Field(default=3, ge=1)
    theft_percent: int = Field(default=25, ge=1, le=100)
    theft_transfer_to_guard: bool = False

    # Bribery
    bribery_enabled: bool = True
    bribery_base_cost: int = Field(default=50, ge=0)
    bribery_chance: int = Field(default=70, ge=0, le=100)
    bribery_double_cross_fraction: float = Field(default=0.1, ge=0, le=1)

    # Bleed-out
    bleed_out_enabled: bool = True
    bleed_out_threshold: int = Field(default=25, ge=0, le=100)  # % of max HP
    bleed_out_base_dc: int = Field(default=10, ge=1, alias="bleedOutBaseDC")
    bleed_out_player_control: Literal["player", "gm"] = "player"

    # Jail
    jail_enabled: bool = True
    jail_default_duration: int = Field(default=120, ge=0)  # Minutes, 0 = indefinite
    jail_escape_enabled: bool = True
    jail_escape_dc: int = Field(default=15, ge=1, alias="jailEscapeDC")
    jail_escape_interval: float = Field(default=60.0, gt=0)  # Seconds

    # Reinforcements
    reinforcements_enabled: bool = False
    reinforcement_cooldown: float = Field(default=90.0, ge=0)  # Seconds, per scene
    reinforcement_duration: float = Field(default=30.0, gt=0)  # Seconds on the board
    assistant_chance: int = Field(default=50, ge=0, le=100)


# Both spellings resolve to the attribute name
_KEY_MAP: dict[str, str] = {}
for _name, _field in PatrolSettings.model_fields.items():
    _KEY_MAP[_name] = _name
    _KEY_MAP[_field.alias or _name] = _name


def setting_name(key: str) -> str | None:
    """Attribute name for a camelCase or snake_case key."""
    return _KEY_MAP.get(key)


def validate_capture_weights(raw: Any) -> CaptureOutcomeWeights:
    """Validate outcome weights, raising ConfigurationInvalid."""
    if isinstance(raw, CaptureOutcomeWeights):
        return raw
    try:
        return CaptureOutcomeWeights.model_validate(raw)
    except ValidationError as exc:
        reason = "; ".join(err["msg"] for err in exc.errors())
        raise ConfigurationInvalid("captureOutcomeWeights", reason) from exc


def weights_total(raw: Any) -> int:
    """Sum of the submitted weights, tolerating junk values."""
    if isinstance(raw, CaptureOutcomeWeights):
        return raw.total
    total = 0
    if isinstance(raw, dict):
        for key in DEFAULT_CAPTURE_WEIGHTS:
            try:
                total += int(raw.get(key, 0) or 0)
            except (TypeError, ValueError):
                continue
    return total


# -----------------------------------------------------------------------------
# Stores
# -----------------------------------------------------------------------------

@runtime_checkable
class SettingsStore(Protocol):
    """
    Persistence for the settings document.

    Implementations:
    - JsonSettingsStore: File-based persistence
    - MemorySettingsStore: In-memory storage (testing)
    """

    def load(self) -> dict:
        """Return the stored settings (may be empty)."""
        ...

    def save(self, data: dict) -> None:
        """Persist the settings document."""
        ...


class JsonSettingsStore:
    """Settings in a single JSON file, with a .bak of the previous save."""

    def __init__(self, path: Path | str = "patrol_data/settings.json"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable settings file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: dict) -> None:
        if self.path.exists():
            backup = self.path.with_suffix(".json.bak")
            backup.write_text(self.path.read_text(encoding="utf-8"), encoding="utf-8")
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class MemorySettingsStore:
    """In-memory settings for testing."""

    def __init__(self, initial: dict | None = None):
        self.data: dict = dict(initial or {})
        self.save_count = 0

    def load(self) -> dict:
        return dict(self.data)

    def save(self, data: dict) -> None:
        self.data = dict(data)
        self.save_count += 1


# -----------------------------------------------------------------------------
# Accessor
# -----------------------------------------------------------------------------

class Settings:
    """
    Validated access to the shared configuration.

    Reads always hit the current values, so callers resolving tri-state
    overrides never see a stale default.
    """

    def __init__(self, store: SettingsStore | None = None):
        self.store = store if store is not None else MemorySettingsStore()
        self._bus: "EventBus | None" = None
        self._notifier: "Notifier | None" = None
        self.load_warnings: list[str] = []
        self._values = self._load()

    def attach(self, bus: "EventBus", notifier: "Notifier") -> None:
        """Wire the bus and notifier; replays warnings raised during load."""
        self._bus = bus
        self._notifier = notifier
        for message in self.load_warnings:
            notifier.warn(message)
            bus.emit(EventType.SETTINGS_REJECTED, message=message)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._values, name)

    @property
    def values(self) -> PatrolSettings:
        return self._values

    def _load(self) -> PatrolSettings:
        raw = dict(self.store.load())
        try:
            return PatrolSettings.model_validate(raw)
        except ValidationError as exc:
            bad_fields = {
                setting_name(str(err["loc"][0]))
                for err in exc.errors()
                if err["loc"]
            }
            for key in list(raw):
                name = setting_name(key)
                if name in bad_fields:
                    alias = PatrolSettings.model_fields[name].alias or name
                    message = f"Invalid setting '{alias}' rejected; reset to default"
                    logger.warning(message)
                    self.load_warnings.append(message)
                    raw.pop(key)
            values = PatrolSettings.model_validate(raw)
            self.store.save(values.model_dump(mode="json", by_alias=True))
            return values

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._notifier is not None:
            self._notifier.warn(message)

    def _commit(self, values: PatrolSettings, changed: list[str]) -> None:
        self._values = values
        self.store.save(values.model_dump(mode="json", by_alias=True))
        if self._bus is not None:
            self._bus.emit(EventType.SETTINGS_CHANGED, keys=changed)

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Current value for a key, or `default` for unknown keys."""
        name = setting_name(key)
        if name is None:
            return default
        return getattr(self._values, name)

    def set_setting(self, key: str, value: Any) -> None:
        """
        Validate and persist a single setting.

        Raises:
            ConfigurationInvalid: unknown key or value failing validation
        """
        self.update({key: value}, raise_on_error=True)

    def update(self, changes: dict[str, Any], raise_on_error: bool = False) -> dict:
        """
        Apply several settings at once.

        Outcome weights go through save_capture_weights (reject-and-reset);
        any other invalid value rejects the whole batch unchanged.
        """
        changes = dict(changes)
        weights_result = None
        for key in list(changes):
            if setting_name(key) == "capture_outcome_weights":
                weights_result = self.save_capture_weights(changes.pop(key))

        if changes:
            data = self._values.model_dump()
            changed = []
            for key, value in changes.items():
                name = setting_name(key)
                if name is None:
                    error = ConfigurationInvalid(key, "unknown setting")
                    if raise_on_error:
                        raise error
                    return {"success": False, "error": str(error)}
                data[name] = value
                changed.append(name)
            try:
                values = PatrolSettings.model_validate(data)
            except ValidationError as exc:
                reason = "; ".join(err["msg"] for err in exc.errors())
                error = ConfigurationInvalid(", ".join(changed), reason)
                self._warn(str(error))
                if raise_on_error:
                    raise error from exc
                return {"success": False, "error": str(error)}
            self._commit(values, changed)

        if weights_result is not None and not weights_result["success"]:
            if raise_on_error:
                raise ConfigurationInvalid("captureOutcomeWeights", weights_result["error"])
            return weights_result
        return {"success": True}

    def save_capture_weights(self, weights: Any) -> dict:
        """
        Save outcome weights.

        Weights not totalling 100 are rejected; the stored weights are
        reset to the defaults and the operator is warned.
        """
        total = weights_total(weights)
        try:
            validated = validate_capture_weights(weights)
        except ConfigurationInvalid as exc:
            self._warn(f"Outcome weights must total 100% (currently {total}%); reverted to defaults")
            if self._bus is not None:
                self._bus.emit(EventType.SETTINGS_REJECTED, key="captureOutcomeWeights", total=total)
            defaults = self._values.model_copy(update={"capture_outcome_weights": CaptureOutcomeWeights()})
            self._commit(defaults, ["capture_outcome_weights"])
            return {
                "success": False,
                "error": exc.reason,
                "total": total,
                "weights": dict(DEFAULT_CAPTURE_WEIGHTS),
            }

        values = self._values.model_copy(update={"capture_outcome_weights": validated})
        self._commit(values, ["capture_outcome_weights"])
        return {
            "success": True,
            "total": validated.total,
            "weights": validated.model_dump(),
        }

    def reset(self) -> None:
        """Restore every setting to its default."""
        self._commit(PatrolSettings(), list(PatrolSettings.model_fields))
