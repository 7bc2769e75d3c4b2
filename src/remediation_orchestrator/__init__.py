from importlib.metadata import version

from .audit import AuditSink, InMemoryAuditLog, mask_secrets, sanitize_metadata
from .errors import (
    DependencyCycleError,
    InvalidTransitionError,
    OrchestrationNotFoundError,
    OrchestratorError,
    PlanParseError,
    TaskExecutionError,
)
from .events import EventBus, EventChannel, Subscription
from .models import (
    EventKind,
    ExecutionPolicy,
    OrchestrationEvent,
    OrchestrationRequest,
    OrchestrationState,
    OrchestrationStatus,
    Plan,
    RepoInfo,
    RiskLevel,
    SandboxConfig,
    SandboxMethod,
    SandboxResult,
    SubmissionReceipt,
    SubTask,
    SubTaskType,
    TaskOutcome,
    TaskOutcomeStatus,
)
from .orchestrator import Orchestrator
from .planner import FixturePlanGenerator, LLMPlanGenerator, PlanGenerator, TaskGraphBuilder
from .sandbox import SandboxRunner
from .scheduler import WaveScheduler
from .service import OrchestrationService
from .settings import RuntimeSettings
from .workers import TaskContext, WorkerRegistry, fixture_workers


def get_version() -> str:
    try:
        return version("remediation-orchestrator")
    except Exception:
        return "0.0.0"


__all__ = [
    "AuditSink",
    "DependencyCycleError",
    "EventBus",
    "EventChannel",
    "EventKind",
    "ExecutionPolicy",
    "FixturePlanGenerator",
    "InMemoryAuditLog",
    "InvalidTransitionError",
    "LLMPlanGenerator",
    "OrchestrationEvent",
    "OrchestrationNotFoundError",
    "OrchestrationRequest",
    "OrchestrationService",
    "OrchestrationState",
    "OrchestrationStatus",
    "Orchestrator",
    "OrchestratorError",
    "Plan",
    "PlanGenerator",
    "PlanParseError",
    "RepoInfo",
    "RiskLevel",
    "RuntimeSettings",
    "SandboxConfig",
    "SandboxMethod",
    "SandboxResult",
    "SandboxRunner",
    "SubTask",
    "SubTaskType",
    "SubmissionReceipt",
    "Subscription",
    "TaskContext",
    "TaskExecutionError",
    "TaskGraphBuilder",
    "TaskOutcome",
    "TaskOutcomeStatus",
    "WaveScheduler",
    "WorkerRegistry",
    "fixture_workers",
    "get_version",
    "mask_secrets",
    "sanitize_metadata",
]
