from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .canonical import to_canonical_json
from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(UTC)


class SubTaskType(str, Enum):
    ANALYZE = "analyze"
    REFACTOR = "refactor"
    TEST = "test"
    SECURITY = "security"
    REVIEW = "review"
    DEPLOY = "deploy"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FailMode(str, Enum):
    FAIL = "fail"
    WARN = "warn"


class SandboxMethod(str, Enum):
    CONTAINER = "container"
    SCRIPTED_SHELL = "scripted-shell"
    NATIVE = "native"


class OrchestrationStatus(str, Enum):
    CREATED = "created"
    PLANNING = "planning"
    EXECUTING = "executing"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class TaskOutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventKind(str, Enum):
    PLAN = "plan"
    TASK_STARTED = "task-started"
    TASK_COMPLETE = "task-complete"
    TASK_FAILED = "task-failed"
    SANDBOX_LOG = "sandbox-log"
    APPROVAL_REQUIRED = "approval-required"
    APPROVAL_GRANTED = "approval-granted"
    ORCHESTRATION_COMPLETE = "orchestration-complete"
    ORCHESTRATION_FAILED = "orchestration-failed"
    ORCHESTRATION_EXPIRED = "orchestration-expired"


# Worker roles.
ROLE_ADVISOR = "advisor"
ROLE_ADVISOR_IMPACT = "advisor-impact"
ROLE_OPERATOR = "operator"
ROLE_REVIEWER = "reviewer"
ROLE_EXECUTOR = "executor"
KNOWN_ROLES: frozenset[str] = frozenset(
    {ROLE_ADVISOR, ROLE_ADVISOR_IMPACT, ROLE_OPERATOR, ROLE_REVIEWER, ROLE_EXECUTOR}
)
PRIVILEGED_ROLES: frozenset[str] = frozenset({ROLE_OPERATOR, ROLE_EXECUTOR})

TERMINAL_STATUSES: frozenset[OrchestrationStatus] = frozenset(
    {OrchestrationStatus.COMPLETED, OrchestrationStatus.FAILED, OrchestrationStatus.EXPIRED}
)

STATUS_TRANSITIONS: dict[OrchestrationStatus, frozenset[OrchestrationStatus]] = {
    OrchestrationStatus.CREATED: frozenset({OrchestrationStatus.PLANNING, OrchestrationStatus.FAILED}),
    OrchestrationStatus.PLANNING: frozenset({OrchestrationStatus.EXECUTING, OrchestrationStatus.FAILED}),
    OrchestrationStatus.EXECUTING: frozenset(
        {
            OrchestrationStatus.WAITING_APPROVAL,
            OrchestrationStatus.COMPLETED,
            OrchestrationStatus.FAILED,
        }
    ),
    OrchestrationStatus.WAITING_APPROVAL: frozenset(
        {
            OrchestrationStatus.EXECUTING,
            OrchestrationStatus.FAILED,
            OrchestrationStatus.EXPIRED,
        }
    ),
    OrchestrationStatus.COMPLETED: frozenset(),
    OrchestrationStatus.FAILED: frozenset(),
    OrchestrationStatus.EXPIRED: frozenset(),
}


def validate_transition(current: OrchestrationStatus, target: OrchestrationStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is an allowed status change."""
    if target == current:
        return
    if target not in STATUS_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Illegal orchestration transition {current.value} -> {target.value}")


class WireModel(BaseModel):
    """Accepts both snake_case field names and camelCase wire keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubTask(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    type: SubTaskType
    description: str = ""
    agent: str = ROLE_ADVISOR
    dependencies: tuple[str, ...] = ()
    priority: Priority = Priority.MEDIUM
    estimated_complexity: int = Field(default=5, ge=1, le=10)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (set, frozenset)):
            value = sorted(str(item) for item in value)
        if isinstance(value, (list, tuple)):
            return tuple(dict.fromkeys(str(item) for item in value))
        return value


class Plan(WireModel):
    """Immutable, dependency-annotated plan produced by the TaskGraphBuilder."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    original_request: str
    summary: str
    subtasks: tuple[SubTask, ...] = ()
    estimated_time: str = "unknown"
    risk_level: RiskLevel = RiskLevel.MEDIUM
    requires_approval: bool = False

    @model_validator(mode="before")
    @classmethod
    def _critical_requires_approval(cls, data: Any) -> Any:
        if isinstance(data, dict):
            risk = data.get("risk_level", data.get("riskLevel"))
            if risk == RiskLevel.CRITICAL:
                data = {key: value for key, value in data.items() if key not in {"requires_approval", "requiresApproval"}}
                data["requires_approval"] = True
        return data

    @model_validator(mode="after")
    def _validate_task_ids(self) -> "Plan":
        seen: set[str] = set()
        for task in self.subtasks:
            if task.id in seen:
                raise ValueError(f"Duplicate subtask id: {task.id}")
            seen.add(task.id)
        for task in self.subtasks:
            unknown = [dep for dep in task.dependencies if dep not in seen]
            if unknown:
                raise ValueError(f"Subtask {task.id} depends on unknown subtask(s): {', '.join(unknown)}")
        return self

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.subtasks]

    def get(self, task_id: str) -> SubTask:
        for task in self.subtasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)

    @property
    def fingerprint(self) -> str:
        canonical = to_canonical_json(self.model_dump(mode="json"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class GeneratedSubTask(WireModel):
    """Lenient shape of one subtask as returned by a plan generator, before normalization."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str | int | None = None
    type: str | None = None
    description: str | None = None
    agent: str | None = None
    dependencies: list[str | int] | None = None
    priority: str | None = None
    estimated_complexity: int | float | None = None


class GeneratedPlan(WireModel):
    """Lenient shape of raw plan generator output."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    summary: str | None = None
    subtasks: list[GeneratedSubTask] | None = None
    estimated_time: str | None = None
    risk_level: str | None = None
    requires_approval: bool | None = None


class RepoInfo(WireModel):
    files: int = 0
    languages: list[str] = Field(default_factory=list)


class ExecutionPolicy(WireModel):
    allowed_agents: frozenset[str] | None = None
    require_approval_for: frozenset[str] = frozenset()
    forbidden_keywords: tuple[str, ...] = ()
    safe_mode: bool = False

    def is_allowed(self, role: str) -> bool:
        return self.allowed_agents is None or role in self.allowed_agents

    def forbidden_keyword_in(self, text: str) -> str | None:
        lowered = text.lower()
        for keyword in self.forbidden_keywords:
            if keyword.strip() and keyword.strip().lower() in lowered:
                return keyword
        return None


class SandboxConfig(WireModel):
    enabled: bool = False
    repo_path: str = "."
    command: str | None = None
    runner_path: str | None = None
    timeout_ms: int = Field(default=300_000, gt=0, le=1_800_000)
    fail_mode: FailMode = FailMode.FAIL
    language_hint: str | None = None


class SandboxResult(WireModel):
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    method: SandboxMethod
    error: str | None = None


class SandboxCapabilities(WireModel):
    container: bool
    scripted_shell: bool
    recommended: SandboxMethod


class TaskOutcome(WireModel):
    task_id: str
    status: TaskOutcomeStatus
    agent: str = ""
    output: dict[str, Any] | None = None
    error: str | None = None
    sandbox: SandboxResult | None = None
    duration_ms: int = 0
    finished_at: datetime = Field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskOutcomeStatus.SUCCESS


class PendingApproval(WireModel):
    wave_index: int
    task_id: str
    agent: str
    reason: str
    requested_at: datetime = Field(default_factory=utcnow)


class OrchestrationState(WireModel):
    id: str
    status: OrchestrationStatus = OrchestrationStatus.CREATED
    plan: Plan | None = None
    results: dict[str, TaskOutcome] = Field(default_factory=dict)
    waves: list[list[str]] = Field(default_factory=list)
    current_wave_index: int = 0
    pending_approval: PendingApproval | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class OrchestrationEvent(WireModel):
    orchestration_id: str
    sequence: int
    kind: EventKind
    message: str
    task_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def to_sse(self) -> str:
        """Render the event as one server-sent-events frame."""
        return f"id: {self.sequence}\nevent: {self.kind.value}\ndata: {self.model_dump_json(by_alias=True)}\n\n"


class OrchestrationRequest(WireModel):
    request: str = Field(min_length=1, max_length=10_000)
    context: dict[str, Any] = Field(default_factory=dict)
    sandbox: SandboxConfig | None = None
    execution_policy: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    repo_info: RepoInfo | None = None


class SubmissionReceipt(WireModel):
    orchestration_id: str
    stream_url: str
    logs_url: str
