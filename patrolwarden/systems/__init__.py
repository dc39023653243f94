"""
Patrol systems.

Each system hangs off the PatrolManager and delegates persistence and
event emission back to it.
"""

from .scheduler import PatrolScheduler, PatrolRuntime, Phase
from .detection import DetectionEngine
from .capture import CaptureSystem
from .combat import CombatSystem
from .jail import JailSystem
from .automation import AutomationSystem
from .runner import PatrolRunner
from .sampler import bias_weights, draw_outcome, sample_weighted

__all__ = [
    "PatrolScheduler",
    "PatrolRuntime",
    "Phase",
    "DetectionEngine",
    "CaptureSystem",
    "CombatSystem",
    "JailSystem",
    "AutomationSystem",
    "PatrolRunner",
    "bias_weights",
    "draw_outcome",
    "sample_weighted",
]
