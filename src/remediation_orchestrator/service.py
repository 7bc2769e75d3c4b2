from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from urllib.parse import quote

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver

from .audit import AuditSink, InMemoryAuditLog, safe_log_event
from .errors import InvalidTransitionError, OrchestrationNotFoundError
from .events import EventBus, Subscription
from .models import (
    AuditSeverity,
    OrchestrationRequest,
    OrchestrationState,
    OrchestrationStatus,
    SandboxCapabilities,
    SubmissionReceipt,
    utcnow,
)
from .orchestrator import Orchestrator
from .planner import LLMPlanGenerator, PlanGenerator, TaskGraphBuilder
from .sandbox import SandboxRunner
from .scheduler import WaveScheduler
from .settings import RuntimeSettings
from .state_store import OrchestrationArchive
from .workers import WorkerRegistry, fixture_workers

logger = logging.getLogger(__name__)

_MAX_ACTIVE_ORCHESTRATIONS = 8


class OrchestrationService:
    """Collaborator-facing entry point: submit, approve, observe and expire orchestrations.

    Every collaborator is built once here (or injected) and shared by the
    orchestrations this service runs; each orchestration gets its own event
    channel and checkpoint thread.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        generator: PlanGenerator | None = None,
        builder: TaskGraphBuilder | None = None,
        workers: WorkerRegistry | None = None,
        sandbox: SandboxRunner | None = None,
        audit: AuditSink | None = None,
        event_bus: EventBus | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
        archive: OrchestrationArchive | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        if builder is None:
            builder = TaskGraphBuilder(
                generator
                if generator is not None
                else LLMPlanGenerator(
                    model_name=self.settings.planner_model,
                    temperature=self.settings.planner_temperature,
                )
            )
        self.builder = builder
        self.workers = workers if workers is not None else fixture_workers()
        self.sandbox = (
            sandbox if sandbox is not None else SandboxRunner(container_runtime=self.settings.container_runtime)
        )
        self.audit = audit if audit is not None else InMemoryAuditLog()
        self.event_bus = (
            event_bus
            if event_bus is not None
            else EventBus(
                max_queue=self.settings.event_queue_size,
                history_size=self.settings.event_history_size,
            )
        )
        self.checkpointer = checkpointer if checkpointer is not None else InMemorySaver()
        self.archive = archive
        self._orchestrations: dict[str, Orchestrator] = {}
        self._futures: dict[str, Future[OrchestrationState]] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=_MAX_ACTIVE_ORCHESTRATIONS, thread_name_prefix="orchestration"
        )

    def submit(self, request: OrchestrationRequest) -> SubmissionReceipt:
        """Start an orchestration in the background and return where to follow it."""
        self.prune()
        orchestration_id = f"orch-{uuid.uuid4().hex[:12]}"
        orchestrator = Orchestrator(
            builder=self.builder,
            workers=self.workers,
            sandbox=self.sandbox,
            events=self.event_bus.channel(orchestration_id),
            audit=self.audit,
            settings=self.settings,
            scheduler=WaveScheduler(self.settings.cycle_policy),
            checkpointer=self.checkpointer,
            archive=self.archive,
            orchestration_id=orchestration_id,
        )
        with self._lock:
            self._orchestrations[orchestration_id] = orchestrator
            self._futures[orchestration_id] = self._executor.submit(
                orchestrator.start,
                request.request,
                request.context,
                request.execution_policy,
                sandbox=request.sandbox,
                repo_info=request.repo_info,
            )
        safe_log_event(
            self.audit,
            "orchestration_submitted",
            AuditSeverity.INFO,
            request.request,
            {"orchestration_id": orchestration_id},
        )
        logger.info("Submitted orchestration %s", orchestration_id)

        query = f"orchestrationId={quote(orchestration_id)}"
        base = self.settings.stream_base_url
        return SubmissionReceipt(
            orchestration_id=orchestration_id,
            stream_url=f"{base}/stream?{query}",
            logs_url=f"{base}/logs?{query}",
        )

    def _require(self, orchestration_id: str) -> Orchestrator:
        with self._lock:
            orchestrator = self._orchestrations.get(orchestration_id)
        if orchestrator is None:
            raise OrchestrationNotFoundError(orchestration_id)
        return orchestrator

    def wait(self, orchestration_id: str, timeout: float | None = None) -> OrchestrationState:
        """Block until the orchestration's current run (start or resume) returns.

        Re-raises whatever that run raised; ``TimeoutError`` if ``timeout`` elapses first.
        """
        orchestrator = self._require(orchestration_id)
        with self._lock:
            future = self._futures.get(orchestration_id)
        if future is not None:
            future.result(timeout=timeout)
        return orchestrator.state

    def approve(self, orchestration_id: str) -> OrchestrationState:
        """Resume a paused orchestration in the background.

        Raises:
            OrchestrationNotFoundError: For an unknown id.
            InvalidTransitionError: If the orchestration is not waiting for approval.
        """
        orchestrator = self._require(orchestration_id)
        state = self.wait(orchestration_id)
        if state.status != OrchestrationStatus.WAITING_APPROVAL:
            raise InvalidTransitionError(
                f"Orchestration {orchestration_id} is {state.status.value}, not waiting for approval"
            )
        with self._lock:
            self._futures[orchestration_id] = self._executor.submit(orchestrator.approve, orchestration_id)
        logger.info("Approval received for orchestration %s", orchestration_id)
        return orchestrator.state

    def get(self, orchestration_id: str) -> OrchestrationState:
        with self._lock:
            orchestrator = self._orchestrations.get(orchestration_id)
        if orchestrator is not None:
            return orchestrator.state
        if self.archive is not None:
            return self.archive.read(orchestration_id)
        raise OrchestrationNotFoundError(orchestration_id)

    def stream(self, orchestration_id: str, *, replay: bool = True) -> Subscription:
        channel = self.event_bus.get(orchestration_id)
        if channel is None:
            raise OrchestrationNotFoundError(orchestration_id)
        return channel.subscribe(replay=replay)

    def expire_stale(self, now: datetime | None = None) -> list[str]:
        """Expire every paused orchestration whose approval outlived the configured TTL.

        Terminal orchestrations past the retention window are pruned afterwards.
        """
        expired: list[str] = []
        if self.settings.approval_ttl_seconds > 0:
            with self._lock:
                candidates = list(self._orchestrations.items())
            for orchestration_id, orchestrator in candidates:
                if not orchestrator.is_stale(now):
                    continue
                try:
                    orchestrator.expire()
                except InvalidTransitionError as exc:
                    logger.info("Skipping expiry of orchestration %s: %s", orchestration_id, exc)
                    continue
                expired.append(orchestration_id)
        self.prune(now)
        return expired

    def prune(self, now: datetime | None = None) -> list[str]:
        """Forget terminal orchestrations older than ``terminal_retention_seconds``.

        Their event channels are closed and dropped; ``get`` still answers
        from the archive when one is configured.
        """
        cutoff = (now or utcnow()) - timedelta(seconds=self.settings.terminal_retention_seconds)
        with self._lock:
            candidates = list(self._orchestrations.items())
        pruned: list[str] = []
        for orchestration_id, orchestrator in candidates:
            with self._lock:
                future = self._futures.get(orchestration_id)
            if future is not None and not future.done():
                continue
            state = orchestrator.state
            if not state.is_terminal or state.updated_at > cutoff:
                continue
            with self._lock:
                self._orchestrations.pop(orchestration_id, None)
                self._futures.pop(orchestration_id, None)
            self.event_bus.remove(orchestration_id)
            pruned.append(orchestration_id)
        if pruned:
            logger.info("Pruned %d terminal orchestration(s): %s", len(pruned), ", ".join(pruned))
        return pruned

    def __len__(self) -> int:
        with self._lock:
            return len(self._orchestrations)

    def capabilities(self) -> SandboxCapabilities:
        return self.sandbox.capabilities(self.settings.sandbox_runner_path or None)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
