from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import TaskExecutionError
from .models import (
    ROLE_ADVISOR,
    ROLE_ADVISOR_IMPACT,
    ROLE_EXECUTOR,
    ROLE_OPERATOR,
    ROLE_REVIEWER,
    SubTask,
    TaskOutcome,
)

logger = logging.getLogger(__name__)


def _discard(_: str) -> None:
    return None


@dataclass(frozen=True)
class TaskContext:
    """What a worker sees while handling one subtask."""

    orchestration_id: str
    request: str
    context: dict[str, Any] = field(default_factory=dict)
    dependency_results: dict[str, TaskOutcome] = field(default_factory=dict)
    log: Callable[[str], None] = _discard


Worker = Callable[[SubTask, TaskContext], dict[str, Any]]
"""A worker role implementation. Returns a JSON-serializable payload or raises."""


class WorkerRegistry:
    def __init__(self, workers: dict[str, Worker] | None = None) -> None:
        self._workers: dict[str, Worker] = {}
        for role, worker in (workers or {}).items():
            self.register(role, worker)

    def register(self, role: str, worker: Worker) -> None:
        role = role.strip().lower()
        if not role:
            raise ValueError("worker role must be non-empty")
        self._workers[role] = worker
        logger.debug("Registered worker for role %s", role)

    def resolve(self, task: SubTask) -> Worker:
        try:
            return self._workers[task.agent]
        except KeyError:
            raise TaskExecutionError(task.id, f"no worker registered for role {task.agent!r}") from None

    def roles(self) -> list[str]:
        return sorted(self._workers)

    def __contains__(self, role: object) -> bool:
        return role in self._workers


def _advisor(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
    ctx.log(f"advisor analyzing: {task.description or task.type.value}")
    return {
        "role": ROLE_ADVISOR,
        "summary": f"Analysis of '{ctx.request}' for subtask {task.id}",
        "findings": [],
    }


def _advisor_impact(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
    return {
        "role": ROLE_ADVISOR_IMPACT,
        "summary": f"Impact assessment for subtask {task.id}",
        "affected_files": [],
    }


def _operator(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
    branch = f"remediation/{ctx.orchestration_id}/{task.id}"
    ctx.log(f"operator prepared branch {branch}")
    return {"role": ROLE_OPERATOR, "branch": branch, "patch_applied": False}


def _reviewer(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
    upstream = sorted(ctx.dependency_results)
    return {
        "role": ROLE_REVIEWER,
        "approved": all(outcome.succeeded for outcome in ctx.dependency_results.values()),
        "reviewed_tasks": upstream,
    }


def _executor(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
    ctx.log(f"executor finished subtask {task.id} (dry run)")
    return {"role": ROLE_EXECUTOR, "merged": False, "dry_run": True}


def fixture_workers() -> WorkerRegistry:
    """Deterministic, side-effect free workers for every known role."""
    return WorkerRegistry(
        {
            ROLE_ADVISOR: _advisor,
            ROLE_ADVISOR_IMPACT: _advisor_impact,
            ROLE_OPERATOR: _operator,
            ROLE_REVIEWER: _reviewer,
            ROLE_EXECUTOR: _executor,
        }
    )
