import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

import pytest

from remediation_orchestrator.audit import InMemoryAuditLog
from remediation_orchestrator.errors import InvalidTransitionError
from remediation_orchestrator.models import (
    KNOWN_ROLES,
    EventKind,
    ExecutionPolicy,
    FailMode,
    OrchestrationStatus,
    RepoInfo,
    SandboxConfig,
    SubTask,
    TaskOutcomeStatus,
    utcnow,
)
from remediation_orchestrator.orchestrator import Orchestrator, open_checkpointer
from remediation_orchestrator.planner import FixturePlanGenerator, TaskGraphBuilder
from remediation_orchestrator.sandbox import SandboxRunner
from remediation_orchestrator.scheduler import WaveScheduler
from remediation_orchestrator.settings import RuntimeSettings
from remediation_orchestrator.state_store import OrchestrationArchive
from remediation_orchestrator.workers import TaskContext, WorkerRegistry, fixture_workers


class StaticGenerator:
    def __init__(self, payload: Any) -> None:
        self.payload = payload

    def generate(self, request: str, context: dict[str, Any], repo_info: RepoInfo | None) -> Any:
        return self.payload


def _recording_workers(calls: list[str], failing: frozenset[str] = frozenset()) -> WorkerRegistry:
    def worker(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
        calls.append(task.id)
        if task.id in failing:
            raise RuntimeError(f"worker exploded on {task.id}")
        return {"task": task.id, "deps": sorted(ctx.dependency_results)}

    return WorkerRegistry({role: worker for role in KNOWN_ROLES})


def _orchestrator(generator: Any = None, workers: WorkerRegistry | None = None, **kwargs: Any) -> Orchestrator:
    return Orchestrator(
        builder=TaskGraphBuilder(generator if generator is not None else FixturePlanGenerator()),
        workers=workers if workers is not None else fixture_workers(),
        sandbox=SandboxRunner(container_runtime=None),
        **kwargs,
    )


def _kinds(orchestrator: Orchestrator) -> list[EventKind]:
    return [event.kind for event in orchestrator.events.history()]


THREE_STEP_PLAN = {
    "summary": "Analyze, generate tests, review",
    "subtasks": [
        {"id": "1", "type": "analyze", "agent": "advisor"},
        {"id": "2", "type": "test", "agent": "operator", "dependencies": ["1"]},
        {"id": "3", "type": "review", "agent": "reviewer", "dependencies": ["2"]},
    ],
}


def test_fixture_run_completes_end_to_end() -> None:
    orchestrator = _orchestrator()
    state = orchestrator.start("fix bug X")

    assert state.status == OrchestrationStatus.COMPLETED
    assert state.waves == [["1"], ["2"]]
    assert len(state.results) == 2
    assert all(outcome.status == TaskOutcomeStatus.SUCCESS for outcome in state.results.values())
    assert state.results["2"].output["reviewed_tasks"] == ["1"]
    assert state.plan is not None and state.plan.task_ids == ["1", "2"]
    assert state.pending_approval is None
    assert _kinds(orchestrator) == [
        EventKind.PLAN,
        EventKind.TASK_STARTED,
        EventKind.TASK_COMPLETE,
        EventKind.TASK_STARTED,
        EventKind.TASK_COMPLETE,
        EventKind.ORCHESTRATION_COMPLETE,
    ]
    final = orchestrator.events.history()[-1]
    assert set(final.data["results"]) == {"1", "2"}
    assert final.data["counts"]["success"] == 2
    assert orchestrator.events.closed is True


def test_approval_gate_pauses_until_matching_approve() -> None:
    calls: list[str] = []
    orchestrator = _orchestrator(StaticGenerator(THREE_STEP_PLAN), _recording_workers(calls))
    policy = ExecutionPolicy(require_approval_for=frozenset({"operator"}))

    state = orchestrator.start("generate tests", execution_policy=policy)
    assert state.status == OrchestrationStatus.WAITING_APPROVAL
    assert state.pending_approval is not None
    assert state.pending_approval.task_id == "2"
    assert state.pending_approval.wave_index == 1
    assert calls == ["1"]
    assert set(state.results) == {"1"}

    approval_event = orchestrator.events.history()[-1]
    assert approval_event.kind == EventKind.APPROVAL_REQUIRED
    assert approval_event.data["orchestration_id"] == orchestrator.orchestration_id
    assert approval_event.data["plan_fingerprint"] == state.plan.fingerprint

    with pytest.raises(InvalidTransitionError, match="does not match"):
        orchestrator.approve("orch-someone-else")
    assert orchestrator.state.status == OrchestrationStatus.WAITING_APPROVAL
    assert calls == ["1"]

    state = orchestrator.approve(orchestrator.orchestration_id)
    assert state.status == OrchestrationStatus.COMPLETED
    assert calls == ["1", "2", "3"]
    assert len(state.results) == 3
    assert EventKind.APPROVAL_GRANTED in _kinds(orchestrator)


def test_approve_outside_a_pause_is_rejected() -> None:
    orchestrator = _orchestrator()
    with pytest.raises(InvalidTransitionError):
        orchestrator.approve(orchestrator.orchestration_id)
    orchestrator.start("fix bug X")
    with pytest.raises(InvalidTransitionError, match="not waiting for approval"):
        orchestrator.approve(orchestrator.orchestration_id)


def test_start_twice_is_rejected() -> None:
    orchestrator = _orchestrator()
    orchestrator.start("fix bug X")
    with pytest.raises(InvalidTransitionError, match="already started"):
        orchestrator.start("fix bug X")


def test_gate_inside_a_wave_holds_later_siblings() -> None:
    calls: list[str] = []
    generator = StaticGenerator(
        {
            "subtasks": [
                {"id": "a", "type": "analyze", "agent": "advisor"},
                {"id": "b", "type": "test", "agent": "operator"},
                {"id": "c", "type": "analyze", "agent": "advisor-impact"},
            ]
        }
    )
    orchestrator = _orchestrator(generator, _recording_workers(calls))
    state = orchestrator.start("scan", execution_policy=ExecutionPolicy(require_approval_for=frozenset({"operator"})))

    assert state.status == OrchestrationStatus.WAITING_APPROVAL
    assert calls == ["a"]

    state = orchestrator.approve(orchestrator.orchestration_id)
    assert state.status == OrchestrationStatus.COMPLETED
    assert sorted(calls) == ["a", "b", "c"]
    assert calls.count("a") == 1


def test_role_outside_allow_list_needs_approval() -> None:
    orchestrator = _orchestrator()
    state = orchestrator.start("fix bug X", execution_policy=ExecutionPolicy(allowed_agents=frozenset({"advisor"})))
    assert state.status == OrchestrationStatus.WAITING_APPROVAL
    assert state.pending_approval.task_id == "2"
    assert "not in the allowed agents" in state.pending_approval.reason


def test_critical_plan_gates_privileged_roles() -> None:
    payload = dict(THREE_STEP_PLAN, riskLevel="critical", requiresApproval=False)
    orchestrator = _orchestrator(StaticGenerator(payload))
    state = orchestrator.start("risky")

    assert state.plan.requires_approval is True
    assert state.status == OrchestrationStatus.WAITING_APPROVAL
    assert state.pending_approval.task_id == "2"
    assert "plan requires approval" in state.pending_approval.reason


def test_worker_failure_blocks_dependents_but_orchestration_completes() -> None:
    calls: list[str] = []
    orchestrator = _orchestrator(StaticGenerator(THREE_STEP_PLAN), _recording_workers(calls, frozenset({"1"})))
    state = orchestrator.start("analyze")

    assert state.status == OrchestrationStatus.COMPLETED
    assert calls == ["1"]
    assert state.results["1"].status == TaskOutcomeStatus.FAILED
    assert state.results["1"].error == "Task 1 failed: worker exploded on 1"
    assert state.results["2"].status == TaskOutcomeStatus.BLOCKED
    assert state.results["3"].status == TaskOutcomeStatus.BLOCKED

    failures = [event for event in orchestrator.events.history() if event.kind == EventKind.TASK_FAILED]
    assert [event.task_id for event in failures] == ["1", "2", "3"]
    assert [event.data.get("blocked") for event in failures] == [False, True, True]


def test_sibling_failure_does_not_cancel_other_wave_members() -> None:
    calls: list[str] = []
    generator = StaticGenerator(
        {"subtasks": [{"id": "x", "type": "analyze"}, {"id": "y", "type": "analyze"}, {"id": "z", "type": "analyze"}]}
    )
    orchestrator = _orchestrator(generator, _recording_workers(calls, frozenset({"y"})))
    state = orchestrator.start("parallel")

    assert sorted(calls) == ["x", "y", "z"]
    assert state.results["x"].succeeded and state.results["z"].succeeded
    assert state.results["y"].status == TaskOutcomeStatus.FAILED


def test_unknown_worker_role_is_a_task_failure() -> None:
    generator = StaticGenerator({"subtasks": [{"id": "1", "type": "analyze", "agent": "oracle"}]})
    state = _orchestrator(generator).start("ask the oracle")
    assert state.status == OrchestrationStatus.COMPLETED
    assert state.results["1"].status == TaskOutcomeStatus.FAILED
    assert "no worker registered for role 'oracle'" in state.results["1"].error


def test_plan_parse_error_fails_before_any_task_runs() -> None:
    calls: list[str] = []
    orchestrator = _orchestrator(StaticGenerator("{not json"), _recording_workers(calls))
    state = orchestrator.start("fix bug X")

    assert state.status == OrchestrationStatus.FAILED
    assert "invalid JSON" in (state.error or "")
    assert state.results == {}
    assert calls == []
    assert _kinds(orchestrator) == [EventKind.ORCHESTRATION_FAILED]
    assert orchestrator.events.closed is True


def test_cycle_policy_reject_fails_the_orchestration() -> None:
    generator = StaticGenerator(
        {
            "subtasks": [
                {"id": "1", "type": "analyze", "dependencies": ["2"]},
                {"id": "2", "type": "analyze", "dependencies": ["1"]},
            ]
        }
    )
    state = _orchestrator(generator, scheduler=WaveScheduler(cycle_policy="reject")).start("loop")
    assert state.status == OrchestrationStatus.FAILED
    assert "cycle" in (state.error or "")


def test_cycle_policy_force_still_completes() -> None:
    generator = StaticGenerator(
        {
            "subtasks": [
                {"id": "1", "type": "analyze", "dependencies": ["2"]},
                {"id": "2", "type": "analyze", "dependencies": ["1"]},
            ]
        }
    )
    state = _orchestrator(generator).start("loop")
    assert state.status == OrchestrationStatus.COMPLETED
    assert state.waves == [["1"], ["2"]]


def test_forbidden_keyword_and_safe_mode_block_dispatch() -> None:
    calls: list[str] = []
    generator = StaticGenerator(
        {
            "subtasks": [
                {"id": "1", "type": "analyze", "description": "Inspect schema before DROP TABLE"},
                {"id": "2", "type": "review", "agent": "executor"},
                {"id": "3", "type": "review", "agent": "reviewer", "dependencies": ["2"]},
            ]
        }
    )
    policy = ExecutionPolicy(forbidden_keywords=("drop table",), safe_mode=True)
    state = _orchestrator(generator, _recording_workers(calls)).start("cleanup", execution_policy=policy)

    assert calls == []
    assert "Forbidden keyword" in state.results["1"].error
    assert state.results["2"].error == "Blocked by safe mode"
    assert state.results["3"].status == TaskOutcomeStatus.BLOCKED


def test_failed_sandbox_validation_gates_the_task(tmp_path: Path) -> None:
    calls: list[str] = []
    orchestrator = _orchestrator(workers=_recording_workers(calls))
    sandbox = SandboxConfig(enabled=True, repo_path=str(tmp_path), command="echo validating; exit 1")
    state = orchestrator.start("fix bug X", sandbox=sandbox)

    assert calls == []
    assert state.results["1"].status == TaskOutcomeStatus.FAILED
    assert "sandbox validation failed" in state.results["1"].error
    assert state.results["1"].sandbox.exit_code == 1
    assert state.results["2"].status == TaskOutcomeStatus.BLOCKED
    logs = [event for event in orchestrator.events.history() if event.kind == EventKind.SANDBOX_LOG]
    assert logs and logs[0].message == "validating"
    assert logs[0].data == {"stream": "stdout"}


def test_warn_mode_sandbox_lets_tasks_proceed(tmp_path: Path) -> None:
    calls: list[str] = []
    sandbox = SandboxConfig(
        enabled=True,
        repo_path=str(tmp_path),
        command="echo flaky >&2; exit 1",
        fail_mode=FailMode.WARN,
    )
    state = _orchestrator(workers=_recording_workers(calls)).start("fix bug X", sandbox=sandbox)

    assert state.status == OrchestrationStatus.COMPLETED
    assert calls == ["1", "2"]
    assert state.results["1"].sandbox.success is True
    assert state.results["1"].sandbox.exit_code == 1


def test_executor_tasks_are_validated_with_default_sandbox() -> None:
    generator = StaticGenerator({"subtasks": [{"id": "1", "type": "review", "agent": "executor"}]})
    state = _orchestrator(generator).start("merge")
    outcome = state.results["1"]
    assert outcome.succeeded
    assert outcome.sandbox is not None
    assert outcome.sandbox.stdout == "Sandbox disabled"


def test_wave_concurrency_is_bounded() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def slow(task: SubTask, ctx: TaskContext) -> dict[str, Any]:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return {}

    generator = StaticGenerator({"subtasks": [{"id": str(index), "type": "analyze"} for index in range(6)]})
    orchestrator = _orchestrator(
        generator,
        WorkerRegistry({"advisor": slow}),
        settings=RuntimeSettings(max_concurrency=2),
    )
    state = orchestrator.start("fan out")

    assert state.status == OrchestrationStatus.COMPLETED
    assert len(state.results) == 6
    assert 1 <= peak <= 2


def test_paused_orchestration_expires_after_ttl() -> None:
    orchestrator = _orchestrator(settings=RuntimeSettings(approval_ttl_seconds=60))
    state = orchestrator.start("fix bug X", execution_policy=ExecutionPolicy(require_approval_for=frozenset({"reviewer"})))
    assert state.status == OrchestrationStatus.WAITING_APPROVAL

    assert orchestrator.is_stale(utcnow()) is False
    assert orchestrator.is_stale(utcnow() + timedelta(seconds=61)) is True

    state = orchestrator.expire()
    assert state.status == OrchestrationStatus.EXPIRED
    assert state.pending_approval is None
    assert orchestrator.events.closed is True
    assert _kinds(orchestrator)[-1] == EventKind.ORCHESTRATION_EXPIRED

    assert orchestrator.expire().status == OrchestrationStatus.EXPIRED
    with pytest.raises(InvalidTransitionError):
        orchestrator.approve(orchestrator.orchestration_id)


def test_expire_requires_a_pause() -> None:
    orchestrator = _orchestrator()
    orchestrator.start("fix bug X")
    with pytest.raises(InvalidTransitionError):
        orchestrator.expire()


def test_ttl_zero_never_expires() -> None:
    orchestrator = _orchestrator()
    orchestrator.start("fix bug X", execution_policy=ExecutionPolicy(require_approval_for=frozenset({"reviewer"})))
    assert orchestrator.is_stale(utcnow() + timedelta(days=365)) is False


def test_terminal_state_is_archived(tmp_path: Path) -> None:
    archive = OrchestrationArchive(tmp_path)
    orchestrator = _orchestrator(archive=archive)
    orchestrator.start("fix bug X")

    stored = archive.read(orchestrator.orchestration_id)
    assert stored.status == OrchestrationStatus.COMPLETED
    assert set(stored.results) == {"1", "2"}
    assert archive.list_ids() == [orchestrator.orchestration_id]


def test_approval_flow_with_sqlite_checkpointer(tmp_path: Path) -> None:
    checkpointer = open_checkpointer(tmp_path / "checkpoints" / "orchestrations.sqlite")
    orchestrator = _orchestrator(checkpointer=checkpointer)
    policy = ExecutionPolicy(require_approval_for=frozenset({"reviewer"}))

    assert orchestrator.start("fix bug X", execution_policy=policy).status == OrchestrationStatus.WAITING_APPROVAL
    state = orchestrator.approve(orchestrator.orchestration_id)
    assert state.status == OrchestrationStatus.COMPLETED
    assert len(state.results) == 2
    assert (tmp_path / "checkpoints" / "orchestrations.sqlite").is_file()


def test_audit_trail_records_lifecycle() -> None:
    audit = InMemoryAuditLog()
    orchestrator = _orchestrator(audit=audit)
    orchestrator.start("fix bug X", execution_policy=ExecutionPolicy(require_approval_for=frozenset({"reviewer"})))
    orchestrator.approve(orchestrator.orchestration_id)

    actions = [entry.action for entry in reversed(audit.snapshot())]
    assert actions == ["plan_created", "approval_required", "approval_granted", "orchestration_completed"]


def test_broken_audit_sink_never_fails_the_orchestration() -> None:
    class BrokenSink:
        def log_event(
            self,
            action: str,
            severity: Any,
            message: str,
            metadata: Mapping[str, Any] | None = None,
        ) -> None:
            raise RuntimeError("audit backend down")

    state = _orchestrator(audit=BrokenSink()).start("fix bug X")
    assert state.status == OrchestrationStatus.COMPLETED


def test_generator_exception_fails_the_orchestration_and_closes_channel() -> None:
    class ExplodingGenerator:
        def generate(self, request: str, context: dict[str, Any], repo_info: RepoInfo | None) -> Any:
            raise ConnectionError("planner backend unreachable")

    calls: list[str] = []
    orchestrator = _orchestrator(ExplodingGenerator(), _recording_workers(calls))
    subscription = orchestrator.events.subscribe()
    state = orchestrator.start("fix bug X")

    assert state.status == OrchestrationStatus.FAILED
    assert state.error == "Planning failed: ConnectionError: planner backend unreachable"
    assert calls == []
    assert orchestrator.events.closed is True
    assert [event.kind for event in subscription] == [EventKind.ORCHESTRATION_FAILED]


def test_non_finite_complexity_fails_the_orchestration() -> None:
    payload = '{"subtasks": [{"id": "1", "type": "analyze", "estimatedComplexity": NaN}]}'
    orchestrator = _orchestrator(StaticGenerator(payload))
    state = orchestrator.start("fix bug X")

    assert state.status == OrchestrationStatus.FAILED
    assert "non-finite" in (state.error or "")
    assert _kinds(orchestrator) == [EventKind.ORCHESTRATION_FAILED]
