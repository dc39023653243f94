"""
Tick loop.

One tick advances every active patrol one scheduler step, runs detection
for visible patrols, processes jail releases and escapes, and spawns or
removes reinforcements that are due. A failure inside one patrol is
reported to the operator and never stops the others.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from ..state.schema import PatrolState

if TYPE_CHECKING:
    from ..state.manager import PatrolManager

logger = logging.getLogger(__name__)


class PatrolRunner:
    """Drives the manager's systems on each tick."""

    def __init__(self, manager: "PatrolManager"):
        self.manager = manager
        self.ticks = 0

    @property
    def ctx(self):
        return self.manager.ctx

    def tick(self, now: float | None = None) -> dict:
        """
        Run one update pass.

        Patrols with a decision awaiting approval keep moving but do not
        detect until the GM answers.
        """
        now = self.ctx.now() if now is None else now
        report: dict = {
            "advanced": [],
            "detections": [],
            "errors": [],
            "released": [],
            "escaped": [],
            "spawned": [],
            "despawned": [],
        }
        manager = self.manager

        for patrol in manager.get_patrols():
            if patrol.state != PatrolState.ACTIVE:
                continue
            try:
                phase = manager.scheduler.advance(patrol, now)
                report["advanced"].append((patrol.id, phase.value))
                # Advancing may have stopped the patrol
                if patrol.state != PatrolState.ACTIVE:
                    continue
                if manager.automation.has_pending_for(patrol.id):
                    continue
                for result in manager.detection.check(patrol, now):
                    report["detections"].append({"patrol_id": patrol.id, **result})
            except Exception as e:
                logger.error(f"Tick failed for patrol {patrol.name} ({patrol.id}): {e}", exc_info=True)
                self.ctx.warn(f"Patrol {patrol.name}: {e}")
                report["errors"].append({"patrol_id": patrol.id, "error": str(e)})

        try:
            report["released"] = manager.jail.process_releases(now)
            report["escaped"] = manager.jail.process_escapes(now)
        except Exception as e:
            logger.error(f"Jail processing failed: {e}", exc_info=True)
            self.ctx.warn(f"Jail processing: {e}")
            report["errors"].append({"patrol_id": None, "error": str(e)})

        try:
            spawns = manager.reinforcement.process(now)
            report["spawned"] = spawns["spawned"]
            report["despawned"] = spawns["despawned"]
        except Exception as e:
            logger.error(f"Reinforcement processing failed: {e}", exc_info=True)
            self.ctx.warn(f"Reinforcements: {e}")
            report["errors"].append({"patrol_id": None, "error": str(e)})

        self.ticks += 1
        return report

    def run(
        self,
        ticks: int,
        step: float | None = None,
        advance_clock: Callable[[float], object] | None = None,
    ) -> list[dict]:
        """
        Run several ticks back to back.

        `step` defaults to the `updateInterval` setting. With a manual
        clock pass its `advance` so simulated time moves between ticks;
        otherwise each tick uses now + step offsets from the first.
        """
        step = self.ctx.settings.update_interval / 1000 if step is None else step
        reports = []
        start = self.ctx.now()
        for index in range(ticks):
            if advance_clock is not None:
                if index:
                    advance_clock(step)
                reports.append(self.tick())
            else:
                reports.append(self.tick(start + index * step))
        return reports
