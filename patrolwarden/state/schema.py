"""
Pydantic models for patrolwarden state.

Patrols and waypoints are persisted per scene. The AI log, the pending
approval queue and the jail registry live in one global document.
World objects (tokens, actors, scenes) are edge models: patrols only ever
store their ids and resolve them at action time.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def generate_id() -> str:
    return str(uuid4())[:8]


def format_duration(seconds: float) -> str:
    """Format a span as 'Xh Ym', 'Xm' or 'Xs'."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class PatrolMode(str, Enum):
    BLINK = "blink"    # Teleport between waypoints
    WALK = "walk"      # Interpolated movement
    HYBRID = "hybrid"  # Per-waypoint: teleport targets blink, others walk


class BlinkPattern(str, Enum):
    SEQUENTIAL = "sequential"
    RANDOM = "random"
    PING_PONG = "ping_pong"
    WEIGHTED = "weighted"
    PRIORITY = "priority"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.replace("-", "_").lower()
            if normalized == "pingpong":
                return cls.PING_PONG
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class PatrolState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    ALERT = "alert"  # Reported only; stored run state stays ACTIVE


class AlertState(str, Enum):
    IDLE = "idle"
    SUSPICIOUS = "suspicious"
    ALERT = "alert"


class DetectionAction(str, Enum):
    NOTIFY = "notify"    # GM message only
    ALERT = "alert"      # Visual alert only
    COMBAT = "combat"    # Capture outcome resolver
    MACRO = "macro"      # External macro
    NONE = "none"


class Aggressiveness(str, Enum):
    CONSERVATIVE = "conservative"
    NORMAL = "normal"
    AGGRESSIVE = "aggressive"


class TriState(str, Enum):
    """Per-patrol override: inherit the global default, or force on/off."""
    INHERIT = "inherit"
    ENABLED = "enabled"
    DISABLED = "disabled"

    @classmethod
    def coerce(cls, value: Any) -> "TriState":
        """Accept legacy null/true/false as well as enum values."""
        if isinstance(value, TriState):
            return value
        if value is None:
            return cls.INHERIT
        if value is True:
            return cls.ENABLED
        if value is False:
            return cls.DISABLED
        return cls(value)


def resolve(local: TriState, global_default: bool) -> bool:
    """Effective flag: explicit override wins, INHERIT falls through."""
    if local == TriState.ENABLED:
        return True
    if local == TriState.DISABLED:
        return False
    return bool(global_default)


class CaptureOutcome(str, Enum):
    # Declaration order is the sampling order
    COMBAT = "combat"
    THEFT = "theft"
    RELOCATE = "relocate"
    DISREGARD = "disregard"
    JAIL = "jail"


class TokenDisposition(str, Enum):
    HOSTILE = "hostile"
    NEUTRAL = "neutral"
    FRIENDLY = "friendly"


class PendingActionType(str, Enum):
    PERFORM_ACTION = "performAction"
    BRIBERY = "bribery"
    CAPTURE_OUTCOME = "captureOutcome"
    AUTO_RESOLVE_COMBAT = "autoResolveCombat"


# -----------------------------------------------------------------------------
# World Models
# -----------------------------------------------------------------------------

class Point(BaseModel):
    x: float
    y: float


class Wall(BaseModel):
    x1: float
    y1: float
    x2: float
    y2: float


class Token(BaseModel):
    """A placed token on a scene."""
    id: str = Field(default_factory=generate_id)
    scene_id: str
    name: str = ""
    x: float = 0
    y: float = 0
    actor_id: str | None = None
    hidden: bool = False
    invisible: bool = False  # Magical invisibility, distinct from GM-hidden
    disposition: TokenDisposition = TokenDisposition.HOSTILE
    player_owned: bool = False
    flags: dict[str, Any] = Field(default_factory=dict)

    def distance_to(self, x: float, y: float) -> float:
        return math.hypot(self.x - x, self.y - y)


class Actor(BaseModel):
    """
    An actor record.

    `data` keeps the backend's own shape; only system adapters read it.
    """
    id: str = Field(default_factory=generate_id)
    name: str = ""
    type: str = "npc"
    is_player: bool = False
    level: int = 1
    data: dict[str, Any] = Field(default_factory=dict)
    items: list[dict[str, Any]] = Field(default_factory=list)


class Scene(BaseModel):
    id: str = Field(default_factory=generate_id)
    name: str = "Scene"
    grid_size: int = 100  # Pixels per grid square
    width: int = 4000
    height: int = 3000
    walls: list[Wall] = Field(default_factory=list)
    relocation_points: list[Point] = Field(default_factory=list)
    flags: dict[str, Any] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Patrol Models
# -----------------------------------------------------------------------------

PATROL_COLORS = [
    "#4a90d9", "#d94a4a", "#4ad97a", "#d9c44a",
    "#9b4ad9", "#4ad9d0", "#d9884a", "#d94aa6",
]


class Waypoint(BaseModel):
    """A named position on a scene that patrols can target."""
    id: str = Field(default_factory=generate_id)
    scene_id: str
    name: str = "Waypoint"
    x: float
    y: float
    detection_range: float | None = None  # Grid units; None = global default
    appear_duration: float | None = None  # Overrides the patrol's dwell
    weight: float = 1.0
    priority: int = 0
    teleport: bool = False  # HYBRID: arrive here by blink
    facing_direction: float = 0  # Degrees, 0 = north, clockwise
    vision_angle: float = 360
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    disabled: bool = False
    occupied_by: str | None = None

    def distance_to(self, x: float, y: float) -> float:
        return math.hypot(self.x - x, self.y - y)

    def grid_distance_to(self, x: float, y: float, grid_size: int = 100) -> float:
        return self.distance_to(x, y) / (grid_size or 100)

    def is_in_range(self, x: float, y: float, grid_size: int, default_range: float) -> bool:
        radius = self.detection_range if self.detection_range is not None else default_range
        return self.grid_distance_to(x, y, grid_size) <= radius

    def is_in_vision_cone(self, x: float, y: float, origin: tuple[float, float] | None = None) -> bool:
        """Whether (x, y) lies in the cone seen from `origin` (default: here)."""
        if self.vision_angle >= 360:
            return True
        ox, oy = origin if origin is not None else (self.x, self.y)
        # Screen coordinates: y grows downward, so north is -y
        angle = math.degrees(math.atan2(x - ox, oy - y)) % 360
        diff = abs((angle - self.facing_direction + 180) % 360 - 180)
        return diff <= self.vision_angle / 2

    def clone(self, **overrides) -> "Waypoint":
        data = self.model_dump(exclude={"id", "occupied_by"})
        data.update(overrides)
        return Waypoint(**data)


class Patrol(BaseModel):
    """One automated entity cycling through waypoints on a scene."""
    id: str = Field(default_factory=generate_id)
    name: str = "Patrol"
    scene_id: str
    token_id: str | None = None
    guard_actor_id: str | None = None

    # Movement
    mode: PatrolMode = PatrolMode.BLINK
    blink_pattern: BlinkPattern = BlinkPattern.SEQUENTIAL
    waypoint_ids: list[str] = Field(default_factory=list)
    current_waypoint_index: int = 0
    appear_duration: float = 3.0  # Seconds
    disappear_duration: float = 2.0
    timing_variance: int = 25  # Percent jitter
    walk_speed: float = 4.0  # Grid squares per second

    # Lifecycle
    state: PatrolState = PatrolState.IDLE
    alert_state: AlertState = AlertState.IDLE

    # Automation overrides
    automate_combat: TriState = TriState.INHERIT
    automate_decisions: TriState = TriState.INHERIT
    automate_require_approval: TriState = TriState.INHERIT
    aggressiveness: Aggressiveness = Aggressiveness.NORMAL

    # Detection
    detect_enabled: bool = True
    detection_action: DetectionAction = DetectionAction.NOTIFY
    detection_macro: str | None = None

    bribe_multiplier: float = 1.0
    color: str = PATROL_COLORS[0]
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    disabled: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator(
        "automate_combat", "automate_decisions", "automate_require_approval",
        mode="before",
    )
    @classmethod
    def _coerce_tristate(cls, value):
        return TriState.coerce(value)

    @model_validator(mode="after")
    def _normalize_state(self):
        # Older saves stored ALERT as a run state
        if self.state == PatrolState.ALERT:
            self.state = PatrolState.ACTIVE
            self.alert_state = AlertState.ALERT
        if self.waypoint_ids and not 0 <= self.current_waypoint_index < len(self.waypoint_ids):
            self.current_waypoint_index = 0
        return self

    @property
    def status(self) -> PatrolState:
        """Run state as shown to the operator, with ALERT layered on top."""
        if self.state == PatrolState.ACTIVE and self.alert_state == AlertState.ALERT:
            return PatrolState.ALERT
        return self.state

    @property
    def current_waypoint_id(self) -> str | None:
        if not self.waypoint_ids:
            return None
        return self.waypoint_ids[self.current_waypoint_index]

    def startable_reason(self) -> str | None:
        """Why this patrol cannot start, or None."""
        if self.disabled:
            return "patrol is disabled"
        if len(self.waypoint_ids) < 2:
            return "patrol needs at least 2 waypoints"
        if not self.token_id:
            return "patrol has no token"
        return None

    def clamp_index(self) -> None:
        if not self.waypoint_ids:
            self.current_waypoint_index = 0
        elif self.current_waypoint_index >= len(self.waypoint_ids):
            self.current_waypoint_index = len(self.waypoint_ids) - 1


# -----------------------------------------------------------------------------
# Capture Configuration
# -----------------------------------------------------------------------------

DEFAULT_CAPTURE_WEIGHTS = {
    "combat": 30,
    "theft": 25,
    "relocate": 20,
    "disregard": 15,
    "jail": 10,
}


class CaptureOutcomeWeights(BaseModel):
    """Outcome percentages; must total exactly 100."""
    combat: int = Field(default=30, ge=0)
    theft: int = Field(default=25, ge=0)
    relocate: int = Field(default=20, ge=0)
    disregard: int = Field(default=15, ge=0)
    jail: int = Field(default=10, ge=0)

    @model_validator(mode="after")
    def _check_total(self):
        if self.total != 100:
            raise ValueError(f"outcome weights must total 100 (got {self.total})")
        return self

    @property
    def total(self) -> int:
        return self.combat + self.theft + self.relocate + self.disregard + self.jail

    def ordered(self) -> list[tuple[CaptureOutcome, int]]:
        return [(outcome, getattr(self, outcome.value)) for outcome in CaptureOutcome]


# -----------------------------------------------------------------------------
# Undo Descriptors
# -----------------------------------------------------------------------------

class RestoreCurrency(BaseModel):
    kind: Literal["restore_currency"] = "restore_currency"
    actor_id: str
    amount: int
    holder_id: str | None = None  # Actor that received the gold, if any


class RestoreItem(BaseModel):
    kind: Literal["restore_item"] = "restore_item"
    actor_id: str
    item_id: str
    data: dict[str, Any]
    holder_id: str | None = None


class RestoreHp(BaseModel):
    kind: Literal["restore_hp"] = "restore_hp"
    actor_id: str
    before: int
    after: int


class Reinstate(BaseModel):
    """Bring back a token removed or hidden by auto-resolved combat."""
    kind: Literal["reinstate"] = "reinstate"
    actor_id: str | None = None
    token: Token
    hp_before: int | None = None
    was_removed: bool = False


class ReleaseFromJail(BaseModel):
    kind: Literal["release_from_jail"] = "release_from_jail"
    actor_id: str


UndoStep = Annotated[
    Union[RestoreCurrency, RestoreItem, RestoreHp, Reinstate, ReleaseFromJail],
    Field(discriminator="kind"),
]


class CompositeUndo(BaseModel):
    kind: Literal["composite"] = "composite"
    steps: list[UndoStep] = Field(default_factory=list)


UndoDescriptor = Annotated[
    Union[RestoreCurrency, RestoreItem, RestoreHp, Reinstate, ReleaseFromJail, CompositeUndo],
    Field(discriminator="kind"),
]


def undo_steps(descriptor) -> list:
    """Flatten a descriptor into its individual steps."""
    if isinstance(descriptor, CompositeUndo):
        return list(descriptor.steps)
    return [descriptor]


# -----------------------------------------------------------------------------
# Automation Records
# -----------------------------------------------------------------------------

class PendingAction(BaseModel):
    """A decision waiting for GM approval."""
    id: str = Field(default_factory=generate_id)
    type: PendingActionType
    payload: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    patrol_id: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class AiLogEntry(BaseModel):
    """Immutable audit record."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    type: str
    message: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    undo: UndoDescriptor | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


# -----------------------------------------------------------------------------
# Jail Models
# -----------------------------------------------------------------------------

class JailScene(BaseModel):
    scene_id: str
    config_key: str
    guard_actor_id: str | None = None
    locked: bool = False  # Manual guard choice; auto-assignment must not touch it
    prepared: bool = False
    created_at: datetime = Field(default_factory=datetime.now)


class Prisoner(BaseModel):
    actor_id: str
    actor_name: str = ""
    token_id: str | None = None
    jailed: bool = True
    scene_id: str
    original_scene_id: str | None = None
    original_position: Point | None = None
    cell_index: int = 0
    captured_at: float
    captured_by: str | None = None  # Patrol id
    release_time: float | None = None  # Epoch seconds; None = indefinite
    escape_attempts: int = 0
    last_escape_check: float | None = None

    def time_remaining(self, now: float) -> str:
        if not self.jailed:
            return "Released"
        if self.release_time is None:
            return "Indefinite"
        return format_duration(self.release_time - now)


# -----------------------------------------------------------------------------
# Persisted Documents
# -----------------------------------------------------------------------------

class SceneState(BaseModel):
    """Patrols and waypoints of one scene."""
    scene_id: str
    patrols: list[Patrol] = Field(default_factory=list)
    waypoints: list[Waypoint] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.now)

    def get_patrol(self, patrol_id: str) -> Patrol | None:
        for patrol in self.patrols:
            if patrol.id == patrol_id:
                return patrol
        return None

    def get_waypoint(self, waypoint_id: str) -> Waypoint | None:
        for waypoint in self.waypoints:
            if waypoint.id == waypoint_id:
                return waypoint
        return None


class GlobalState(BaseModel):
    """AI log, pending queue and jail registry."""
    version: str = "1.0"
    ai_log: list[AiLogEntry] = Field(default_factory=list)
    pending: list[PendingAction] = Field(default_factory=list)
    undone_ids: list[str] = Field(default_factory=list)
    undo_progress: dict[str, list[int]] = Field(default_factory=dict)  # Entry id -> reversed step indices
    jail_scenes: dict[str, JailScene] = Field(default_factory=dict)
    prisoners: dict[str, Prisoner] = Field(default_factory=dict)


class ExportScene(BaseModel):
    id: str
    name: str = ""


class ExportDocument(BaseModel):
    """Shape of exported patrol files."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str = "1.0"
    scene: ExportScene
    exported_at: datetime = Field(default_factory=datetime.now)
    patrols: list[Patrol] = Field(default_factory=list)
    waypoints: list[Waypoint] = Field(default_factory=list)
