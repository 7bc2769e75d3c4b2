from __future__ import annotations

import logging
import operator
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, TypedDict

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from .audit import AuditSink, safe_log_event
from .errors import InvalidTransitionError, PlanParseError, TaskExecutionError
from .events import EventChannel
from .models import (
    PRIVILEGED_ROLES,
    ROLE_EXECUTOR,
    AuditSeverity,
    EventKind,
    ExecutionPolicy,
    FailMode,
    OrchestrationState,
    OrchestrationStatus,
    PendingApproval,
    Plan,
    RepoInfo,
    SandboxConfig,
    SubTask,
    TaskOutcome,
    TaskOutcomeStatus,
    utcnow,
    validate_transition,
)
from .planner import TaskGraphBuilder
from .sandbox import SandboxRunner
from .scheduler import WaveScheduler, wave_ids
from .settings import RuntimeSettings
from .state_store import OrchestrationArchive
from .workers import TaskContext, WorkerRegistry

logger = logging.getLogger(__name__)


def _keep_recorded(existing: dict[str, Any] | None, update: dict[str, Any] | None) -> dict[str, Any]:
    """Results reducer: a task id, once recorded, is never overwritten."""
    merged = dict(existing or {})
    for task_id, outcome in (update or {}).items():
        merged.setdefault(task_id, outcome)
    return merged


class OrchestrationGraphState(TypedDict, total=False):
    request: str
    context: dict[str, Any]
    policy: dict[str, Any]
    sandbox: dict[str, Any] | None
    repo_info: dict[str, Any] | None
    plan: dict[str, Any] | None
    waves: list[list[str]]
    wave_index: int
    results: Annotated[dict[str, dict[str, Any]], _keep_recorded]
    approved_task_ids: Annotated[list[str], operator.add]
    pending_approval: dict[str, Any] | None
    status: str
    error: str | None


def open_checkpointer(path: Path) -> SqliteSaver:
    path.parent.mkdir(parents=True, exist_ok=True)
    return SqliteSaver(sqlite3.connect(path, check_same_thread=False))


class Orchestrator:
    """Drives one orchestration: plan, schedule, wave-by-wave dispatch, approval gates.

    The execution loop is a LangGraph StateGraph keyed by the orchestration id
    (the checkpoint thread id). An approval gate is a graph interrupt; the
    graph stays checkpointed at the gate until ``approve`` resumes it or
    ``expire`` ends it. ``state`` mirrors the latest checkpoint.
    """

    def __init__(
        self,
        *,
        builder: TaskGraphBuilder,
        workers: WorkerRegistry,
        sandbox: SandboxRunner,
        events: EventChannel | None = None,
        audit: AuditSink | None = None,
        settings: RuntimeSettings | None = None,
        scheduler: WaveScheduler | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
        archive: OrchestrationArchive | None = None,
        orchestration_id: str | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings()
        self.orchestration_id = orchestration_id or f"orch-{uuid.uuid4().hex[:12]}"
        self.builder = builder
        self.workers = workers
        self.sandbox = sandbox
        self.events = (
            events
            if events is not None
            else EventChannel(
                self.orchestration_id,
                max_queue=self.settings.event_queue_size,
                history_size=self.settings.event_history_size,
            )
        )
        self.audit = audit
        self.scheduler = scheduler if scheduler is not None else WaveScheduler(self.settings.cycle_policy)
        self.archive = archive
        self._lock = threading.RLock()
        self._sandbox_slots = threading.BoundedSemaphore(self.settings.max_sandbox_concurrency)
        self._started = False
        self._created_at = utcnow()
        self._state = OrchestrationState(id=self.orchestration_id, created_at=self._created_at)
        self._config = {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": self.orchestration_id},
        }
        self._checkpointer = checkpointer if checkpointer is not None else InMemorySaver()
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(OrchestrationGraphState)
        graph.add_node("build_plan", self._build_plan_node)
        graph.add_node("execute_wave", self._execute_wave_node)
        graph.add_node("approval_gate", self._approval_gate_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "build_plan")
        graph.add_conditional_edges(
            "build_plan",
            self._after_plan_route,
            {"execute_wave": "execute_wave", "finalize": "finalize"},
        )
        graph.add_conditional_edges(
            "execute_wave",
            self._after_wave_route,
            {
                "execute_wave": "execute_wave",
                "approval_gate": "approval_gate",
                "finalize": "finalize",
            },
        )
        graph.add_edge("approval_gate", "execute_wave")
        graph.add_edge("finalize", END)
        return graph

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestrationState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def start(
        self,
        request: str,
        context: dict[str, Any] | None = None,
        execution_policy: ExecutionPolicy | None = None,
        *,
        sandbox: SandboxConfig | None = None,
        repo_info: RepoInfo | None = None,
    ) -> OrchestrationState:
        """Plan and execute until completion, failure or the first approval gate."""
        with self._lock:
            if self._started:
                raise InvalidTransitionError(f"Orchestration {self.orchestration_id} was already started")
            self._started = True
            policy = execution_policy if execution_policy is not None else ExecutionPolicy()
            initial: OrchestrationGraphState = {
                "request": request,
                "context": dict(context or {}),
                "policy": policy.model_dump(mode="json"),
                "sandbox": sandbox.model_dump(mode="json") if sandbox is not None else None,
                "repo_info": repo_info.model_dump(mode="json") if repo_info is not None else None,
                "plan": None,
                "waves": [],
                "wave_index": 0,
                "results": {},
                "approved_task_ids": [],
                "pending_approval": None,
                "status": OrchestrationStatus.CREATED.value,
                "error": None,
            }
            logger.info("Starting orchestration %s", self.orchestration_id)
            self._invoke(initial)
            return self.state

    def approve(self, orchestration_id: str) -> OrchestrationState:
        """Resume a paused orchestration from its approval gate."""
        with self._lock:
            if orchestration_id != self.orchestration_id:
                raise InvalidTransitionError(
                    f"Approval for {orchestration_id} does not match orchestration {self.orchestration_id}"
                )
            if self._state.status != OrchestrationStatus.WAITING_APPROVAL:
                raise InvalidTransitionError(
                    f"Orchestration {self.orchestration_id} is {self._state.status.value}, not waiting for approval"
                )
            self._invoke(Command(resume={"approved": True, "orchestration_id": orchestration_id}))
            return self.state

    def expire(self, reason: str = "Approval expired") -> OrchestrationState:
        """End a paused orchestration as EXPIRED. Repeated calls are no-ops."""
        with self._lock:
            current = self._state.status
            if current == OrchestrationStatus.EXPIRED:
                return self.state
            validate_transition(current, OrchestrationStatus.EXPIRED)
            pending = self._state.pending_approval
            self.graph.update_state(
                self._config,
                {
                    "status": OrchestrationStatus.EXPIRED.value,
                    "pending_approval": None,
                    "error": reason,
                },
                as_node="finalize",
            )
            self._sync()
            logger.warning("Orchestration %s expired: %s", self.orchestration_id, reason)
            self._publish(
                EventKind.ORCHESTRATION_EXPIRED,
                reason,
                task_id=pending.task_id if pending is not None else None,
                data={"orchestration_id": self.orchestration_id},
            )
            safe_log_event(
                self.audit,
                "orchestration_expired",
                AuditSeverity.WARN,
                reason,
                {"orchestration_id": self.orchestration_id},
            )
            self._archive(self._state)
            self.events.close()
            return self.state

    def is_stale(self, now: datetime | None = None, ttl_seconds: int | None = None) -> bool:
        """True when the pending approval has outlived ``ttl_seconds`` (0 disables expiry)."""
        ttl = self.settings.approval_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            pending = self._state.pending_approval
            if ttl <= 0 or self._state.status != OrchestrationStatus.WAITING_APPROVAL or pending is None:
                return False
        return (now or utcnow()) - pending.requested_at >= timedelta(seconds=ttl)

    # ------------------------------------------------------------------
    # Graph plumbing
    # ------------------------------------------------------------------

    def _invoke(self, graph_input: Any) -> None:
        try:
            self.graph.invoke(graph_input, config=self._config)
        finally:
            self._sync()

    def _sync(self) -> None:
        values = self.graph.get_state(self._config).values
        self._state = self._to_orchestration_state(values)

    def _to_orchestration_state(self, values: dict[str, Any]) -> OrchestrationState:
        return OrchestrationState(
            id=self.orchestration_id,
            status=values.get("status", OrchestrationStatus.CREATED.value),
            plan=values.get("plan"),
            results=values.get("results") or {},
            waves=values.get("waves") or [],
            current_wave_index=values.get("wave_index", 0),
            pending_approval=values.get("pending_approval"),
            error=values.get("error"),
            created_at=self._created_at,
            updated_at=utcnow(),
        )

    def _publish(
        self,
        kind: EventKind,
        message: str,
        *,
        task_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.events.publish(kind, message, task_id=task_id, data=data)

    def _archive(self, state: OrchestrationState) -> None:
        if self.archive is None:
            return
        try:
            self.archive.write(state)
        except OSError as exc:
            logger.warning("Could not archive orchestration %s: %s", state.id, exc)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _build_plan_node(self, state: OrchestrationGraphState) -> dict[str, Any]:
        status = OrchestrationStatus(state["status"])
        validate_transition(status, OrchestrationStatus.PLANNING)
        logger.info("Orchestration %s: %s -> planning", self.orchestration_id, status.value)

        repo_info = RepoInfo.model_validate(state["repo_info"]) if state.get("repo_info") else None
        try:
            plan = self.builder.plan(state["request"], state.get("context") or {}, repo_info)
            waves = wave_ids(self.scheduler.schedule(plan.subtasks))
        except PlanParseError as exc:
            logger.error("Orchestration %s failed during planning: %s", self.orchestration_id, exc)
            return {"status": OrchestrationStatus.FAILED.value, "error": str(exc)}
        except Exception as exc:  # noqa: BLE001 - generator failures end the orchestration as failed.
            logger.exception("Plan generator for orchestration %s raised", self.orchestration_id)
            return {
                "status": OrchestrationStatus.FAILED.value,
                "error": f"Planning failed: {type(exc).__name__}: {exc}",
            }

        validate_transition(OrchestrationStatus.PLANNING, OrchestrationStatus.EXECUTING)
        self._publish(
            EventKind.PLAN,
            plan.summary,
            data={
                "plan": plan.model_dump(mode="json", by_alias=True),
                "waves": waves,
                "fingerprint": plan.fingerprint,
            },
        )
        safe_log_event(
            self.audit,
            "plan_created",
            AuditSeverity.INFO,
            f"Plan {plan.id} with {len(plan.subtasks)} subtasks",
            {"orchestration_id": self.orchestration_id, "risk_level": plan.risk_level.value},
        )
        logger.info(
            "Orchestration %s: planning -> executing (%d subtasks in %d waves)",
            self.orchestration_id,
            len(plan.subtasks),
            len(waves),
        )
        return {
            "plan": plan.model_dump(mode="json"),
            "waves": waves,
            "wave_index": 0,
            "status": OrchestrationStatus.EXECUTING.value,
        }

    def _after_plan_route(self, state: OrchestrationGraphState) -> str:
        if state.get("status") == OrchestrationStatus.FAILED.value:
            return "finalize"
        if not state.get("waves"):
            return "finalize"
        return "execute_wave"

    def _execute_wave_node(self, state: OrchestrationGraphState) -> dict[str, Any]:
        plan = Plan.model_validate(state["plan"])
        policy = ExecutionPolicy.model_validate(state.get("policy") or {})
        wave_index = state["wave_index"]
        recorded = {
            task_id: TaskOutcome.model_validate(payload) for task_id, payload in (state.get("results") or {}).items()
        }
        approved = set(state.get("approved_task_ids") or [])

        new_outcomes: dict[str, TaskOutcome] = {}
        dispatch: list[SubTask] = []
        pending: PendingApproval | None = None

        for task_id in state["waves"][wave_index]:
            if task_id in recorded:
                continue
            task = plan.get(task_id)

            failed_deps = [
                dep for dep in task.dependencies if dep in recorded and not recorded[dep].succeeded
            ]
            if failed_deps:
                outcome = TaskOutcome(
                    task_id=task.id,
                    status=TaskOutcomeStatus.BLOCKED,
                    agent=task.agent,
                    error=f"Blocked by unsuccessful dependencies: {', '.join(failed_deps)}",
                )
                new_outcomes[task.id] = outcome
                self._publish(
                    EventKind.TASK_FAILED,
                    outcome.error,
                    task_id=task.id,
                    data={"blocked": True, "dependencies": failed_deps},
                )
                continue

            violation = self._policy_violation(task, policy)
            if violation is not None:
                outcome = TaskOutcome(
                    task_id=task.id, status=TaskOutcomeStatus.FAILED, agent=task.agent, error=violation
                )
                new_outcomes[task.id] = outcome
                logger.warning("Task %s rejected by execution policy: %s", task.id, violation)
                self._publish(EventKind.TASK_FAILED, violation, task_id=task.id, data={"policy": True})
                safe_log_event(
                    self.audit,
                    "policy_violation",
                    AuditSeverity.WARN,
                    violation,
                    {"orchestration_id": self.orchestration_id, "task_id": task.id},
                )
                continue

            reason = self._approval_reason(task, policy, plan)
            if reason is not None and task.id not in approved:
                pending = PendingApproval(wave_index=wave_index, task_id=task.id, agent=task.agent, reason=reason)
                break
            dispatch.append(task)

        if dispatch:
            new_outcomes.update(self._dispatch(dispatch, state, {**recorded, **new_outcomes}))

        results_update = {task_id: outcome.model_dump(mode="json") for task_id, outcome in new_outcomes.items()}

        if pending is not None:
            validate_transition(OrchestrationStatus.EXECUTING, OrchestrationStatus.WAITING_APPROVAL)
            logger.info(
                "Orchestration %s: executing -> waiting_approval (task %s: %s)",
                self.orchestration_id,
                pending.task_id,
                pending.reason,
            )
            self._publish(
                EventKind.APPROVAL_REQUIRED,
                f"Approval required for task {pending.task_id}: {pending.reason}",
                task_id=pending.task_id,
                data={
                    "orchestration_id": self.orchestration_id,
                    "agent": pending.agent,
                    "wave_index": wave_index,
                    "reason": pending.reason,
                    "plan_fingerprint": plan.fingerprint,
                },
            )
            safe_log_event(
                self.audit,
                "approval_required",
                AuditSeverity.INFO,
                pending.reason,
                {"orchestration_id": self.orchestration_id, "task_id": pending.task_id},
            )
            return {
                "results": results_update,
                "pending_approval": pending.model_dump(mode="json"),
                "status": OrchestrationStatus.WAITING_APPROVAL.value,
            }

        return {"results": results_update, "wave_index": wave_index + 1}

    def _after_wave_route(self, state: OrchestrationGraphState) -> str:
        if state.get("pending_approval"):
            return "approval_gate"
        if state["wave_index"] >= len(state.get("waves") or []):
            return "finalize"
        return "execute_wave"

    def _approval_gate_node(self, state: OrchestrationGraphState) -> dict[str, Any]:
        pending = PendingApproval.model_validate(state["pending_approval"])
        decision = interrupt(
            {
                "orchestration_id": self.orchestration_id,
                "task_id": pending.task_id,
                "agent": pending.agent,
                "reason": pending.reason,
            }
        )
        validate_transition(OrchestrationStatus.WAITING_APPROVAL, OrchestrationStatus.EXECUTING)
        logger.info(
            "Orchestration %s: waiting_approval -> executing (task %s approved)",
            self.orchestration_id,
            pending.task_id,
        )
        self._publish(
            EventKind.APPROVAL_GRANTED,
            f"Task {pending.task_id} approved",
            task_id=pending.task_id,
            data={"orchestration_id": self.orchestration_id, "decision": decision},
        )
        safe_log_event(
            self.audit,
            "approval_granted",
            AuditSeverity.INFO,
            f"Task {pending.task_id} approved",
            {"orchestration_id": self.orchestration_id, "task_id": pending.task_id},
        )
        return {
            "approved_task_ids": [pending.task_id],
            "pending_approval": None,
            "status": OrchestrationStatus.EXECUTING.value,
        }

    def _finalize_node(self, state: OrchestrationGraphState) -> dict[str, Any]:
        status = OrchestrationStatus(state["status"])
        if status == OrchestrationStatus.FAILED:
            final = OrchestrationStatus.FAILED
            message = state.get("error") or "Orchestration failed"
            self._publish(
                EventKind.ORCHESTRATION_FAILED,
                message,
                data={"orchestration_id": self.orchestration_id, "error": message},
            )
            safe_log_event(
                self.audit,
                "orchestration_failed",
                AuditSeverity.ERROR,
                message,
                {"orchestration_id": self.orchestration_id},
            )
        else:
            validate_transition(status, OrchestrationStatus.COMPLETED)
            final = OrchestrationStatus.COMPLETED
            results = state.get("results") or {}
            counts = {outcome_status.value: 0 for outcome_status in TaskOutcomeStatus}
            for payload in results.values():
                counts[payload["status"]] += 1
            message = f"Orchestration completed: {counts['success']}/{len(results)} tasks succeeded"
            self._publish(
                EventKind.ORCHESTRATION_COMPLETE,
                message,
                data={"orchestration_id": self.orchestration_id, "results": results, "counts": counts},
            )
            safe_log_event(
                self.audit,
                "orchestration_completed",
                AuditSeverity.INFO,
                message,
                {"orchestration_id": self.orchestration_id, **counts},
            )
        logger.info("Orchestration %s: %s -> %s", self.orchestration_id, status.value, final.value)

        update = {"status": final.value, "pending_approval": None}
        self._archive(self._to_orchestration_state({**state, **update}))
        self.events.close()
        return update

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    @staticmethod
    def _policy_violation(task: SubTask, policy: ExecutionPolicy) -> str | None:
        keyword = policy.forbidden_keyword_in(task.description)
        if keyword is not None:
            return f"Forbidden keyword {keyword!r} in task description"
        if policy.safe_mode and task.agent == ROLE_EXECUTOR:
            return "Blocked by safe mode"
        return None

    @staticmethod
    def _approval_reason(task: SubTask, policy: ExecutionPolicy, plan: Plan) -> str | None:
        if task.agent in policy.require_approval_for:
            return f"role {task.agent} requires approval"
        if not policy.is_allowed(task.agent):
            return f"role {task.agent} is not in the allowed agents"
        if plan.requires_approval and task.agent in PRIVILEGED_ROLES:
            return f"plan requires approval for privileged role {task.agent}"
        return None

    def _dispatch(
        self,
        tasks: list[SubTask],
        state: OrchestrationGraphState,
        recorded: dict[str, TaskOutcome],
    ) -> dict[str, TaskOutcome]:
        sandbox = SandboxConfig.model_validate(state["sandbox"]) if state.get("sandbox") else None
        outcomes: dict[str, TaskOutcome] = {}
        with ThreadPoolExecutor(
            max_workers=min(self.settings.max_concurrency, len(tasks)),
            thread_name_prefix=f"{self.orchestration_id}-worker",
        ) as pool:
            futures = {
                pool.submit(
                    self._run_task,
                    task,
                    state,
                    sandbox,
                    {dep: recorded[dep] for dep in task.dependencies if dep in recorded},
                ): task.id
                for task in tasks
            }
            for future in as_completed(futures):
                outcome = future.result()
                outcomes[futures[future]] = outcome
                if outcome.succeeded:
                    self._publish(
                        EventKind.TASK_COMPLETE,
                        f"Task {outcome.task_id} completed",
                        task_id=outcome.task_id,
                        data={"outcome": outcome.model_dump(mode="json")},
                    )
                else:
                    self._publish(
                        EventKind.TASK_FAILED,
                        outcome.error or f"Task {outcome.task_id} failed",
                        task_id=outcome.task_id,
                        data={"outcome": outcome.model_dump(mode="json"), "blocked": False},
                    )
                    safe_log_event(
                        self.audit,
                        "task_failed",
                        AuditSeverity.ERROR,
                        outcome.error or "task failed",
                        {"orchestration_id": self.orchestration_id, "task_id": outcome.task_id},
                    )
        return outcomes

    def _default_sandbox_config(self, context: dict[str, Any]) -> SandboxConfig:
        return SandboxConfig(
            enabled=self.settings.sandbox_enabled,
            repo_path=str(context.get("repo_path") or "."),
            runner_path=self.settings.sandbox_runner_path or None,
            timeout_ms=self.settings.sandbox_timeout_ms,
            fail_mode=FailMode(self.settings.sandbox_fail_mode),
        )

    def _run_task(
        self,
        task: SubTask,
        state: OrchestrationGraphState,
        sandbox: SandboxConfig | None,
        dependency_results: dict[str, TaskOutcome],
    ) -> TaskOutcome:
        started = time.monotonic()
        self._publish(EventKind.TASK_STARTED, f"Task {task.id} started ({task.agent})", task_id=task.id)
        context = state.get("context") or {}
        sandbox_result = None
        try:
            if task.agent == ROLE_EXECUTOR or sandbox is not None:
                config = sandbox if sandbox is not None else self._default_sandbox_config(context)

                def forward(stream: str, line: str) -> None:
                    self._publish(EventKind.SANDBOX_LOG, line, task_id=task.id, data={"stream": stream})

                with self._sandbox_slots:
                    sandbox_result = self.sandbox.run(config, log_sink=forward)
                if not sandbox_result.success:
                    detail = sandbox_result.error or f"exit code {sandbox_result.exit_code}"
                    raise TaskExecutionError(task.id, f"sandbox validation failed ({detail})")

            worker = self.workers.resolve(task)
            output = worker(
                task,
                TaskContext(
                    orchestration_id=self.orchestration_id,
                    request=state["request"],
                    context=dict(context),
                    dependency_results=dependency_results,
                    log=lambda message: logger.info("[%s/%s] %s", self.orchestration_id, task.id, message),
                ),
            )
        except TaskExecutionError as exc:
            logger.error("%s", exc)
            return self._failed(task, str(exc), sandbox_result, started)
        except Exception as exc:  # noqa: BLE001 - worker failures are recorded per task.
            logger.exception("Worker for task %s raised", task.id)
            return self._failed(task, str(TaskExecutionError(task.id, str(exc))), sandbox_result, started)

        return TaskOutcome(
            task_id=task.id,
            status=TaskOutcomeStatus.SUCCESS,
            agent=task.agent,
            output=dict(output or {}),
            sandbox=sandbox_result,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _failed(task: SubTask, error: str, sandbox_result: Any, started: float) -> TaskOutcome:
        return TaskOutcome(
            task_id=task.id,
            status=TaskOutcomeStatus.FAILED,
            agent=task.agent,
            error=error,
            sandbox=sandbox_result,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
