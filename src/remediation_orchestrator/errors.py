from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""


class PlanParseError(OrchestratorError, ValueError):
    """Plan generator output could not be turned into a valid Plan.

    Fatal for the orchestration: no task of a partially parsed plan may run.
    """


class DependencyCycleError(PlanParseError):
    """A dependency cycle was found while the scheduler runs with ``cycle_policy="reject"``."""

    def __init__(self, remaining: list[str]) -> None:
        self.remaining = list(remaining)
        super().__init__(
            "Dependency cycle or unknown dependency among subtasks: " + ", ".join(self.remaining)
        )


class TaskExecutionError(OrchestratorError, RuntimeError):
    """A single worker invocation failed. Recorded per task, never fatal to the orchestration."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} failed: {message}")


class OrchestrationNotFoundError(OrchestratorError, KeyError):
    def __init__(self, orchestration_id: str) -> None:
        self.orchestration_id = orchestration_id
        super().__init__(orchestration_id)

    def __str__(self) -> str:
        return f"Unknown orchestration id: {self.orchestration_id}"


class InvalidTransitionError(OrchestratorError, RuntimeError):
    """An operation was requested in a state that does not allow it."""
