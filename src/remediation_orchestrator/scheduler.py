from __future__ import annotations

import logging
from typing import Iterable, Literal

from .errors import DependencyCycleError
from .models import SubTask

logger = logging.getLogger(__name__)

CyclePolicy = Literal["force", "reject"]


class WaveScheduler:
    """Partition subtasks into dependency waves.

    Every task lands in exactly one wave, and all of its dependencies sit in
    strictly earlier waves. Within a wave tasks keep plan declaration order.

    When no remaining task is ready (a cycle, or a dependency on an id outside
    the input) the ``force`` policy schedules the first remaining task alone in
    its own wave and carries on, so any input terminates in at most
    ``len(subtasks)`` waves. The ``reject`` policy raises DependencyCycleError.
    """

    def __init__(self, cycle_policy: CyclePolicy = "force") -> None:
        if cycle_policy not in ("force", "reject"):
            raise ValueError(f"cycle_policy must be 'force' or 'reject', got: {cycle_policy!r}")
        self.cycle_policy = cycle_policy

    def schedule(self, subtasks: Iterable[SubTask]) -> list[list[SubTask]]:
        remaining = list(subtasks)
        scheduled: set[str] = set()
        waves: list[list[SubTask]] = []

        while remaining:
            wave = [task for task in remaining if all(dep in scheduled for dep in task.dependencies)]
            if not wave:
                stuck = [task.id for task in remaining]
                if self.cycle_policy == "reject":
                    raise DependencyCycleError(stuck)
                logger.warning(
                    "No ready subtask among %s; forcing %s into its own wave", stuck, remaining[0].id
                )
                wave = [remaining[0]]

            waves.append(wave)
            wave_ids = {task.id for task in wave}
            scheduled.update(wave_ids)
            remaining = [task for task in remaining if task.id not in wave_ids]

        return waves


def wave_ids(waves: list[list[SubTask]]) -> list[list[str]]:
    return [[task.id for task in wave] for wave in waves]
