"""Entry point for `python -m remediation_orchestrator` and the `remediate` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

from pydantic import ValidationError

from remediation_orchestrator.audit import InMemoryAuditLog
from remediation_orchestrator.models import (
    ExecutionPolicy,
    FailMode,
    OrchestrationRequest,
    OrchestrationStatus,
    SandboxConfig,
)
from remediation_orchestrator.orchestrator import Orchestrator, open_checkpointer
from remediation_orchestrator.planner import FixturePlanGenerator, LLMPlanGenerator, TaskGraphBuilder
from remediation_orchestrator.sandbox import SandboxRunner
from remediation_orchestrator.settings import RuntimeSettings
from remediation_orchestrator.state_store import OrchestrationArchive
from remediation_orchestrator.workers import fixture_workers


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan and run a code remediation orchestration")
    parser.add_argument("--request-text", default=None, help="Inline remediation request")
    parser.add_argument("--request-file", type=Path, default=None, help="Path to a file holding the request")
    parser.add_argument(
        "--fixture",
        action="store_true",
        help="Use the deterministic fixture plan generator instead of the LLM planner",
    )
    parser.add_argument("--repo-path", type=Path, default=Path("."), help="Repository checkout to validate against")
    parser.add_argument("--sandbox", action="store_true", help="Run sandbox validation before every task")
    parser.add_argument("--sandbox-command", default=None, help="Explicit validation command for the sandbox")
    parser.add_argument("--fail-mode", default=None, choices=["fail", "warn"], help="Sandbox failure policy")
    parser.add_argument(
        "--require-approval-for",
        action="append",
        default=[],
        metavar="ROLE",
        help="Worker role that needs approval before dispatch (repeatable)",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every gate immediately (non-interactive runs)",
    )
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory for checkpoints and archived orchestrations",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_request(*, request_text: str | None, request_file: Path | None) -> str:
    if request_text is not None and request_file is not None:
        raise ValueError("--request-text cannot be combined with --request-file")
    if request_text is not None:
        text = request_text
    elif request_file is not None:
        if not request_file.is_file():
            raise FileNotFoundError(f"Request file does not exist: {request_file}")
        text = request_file.read_text(encoding="utf-8")
    else:
        raise ValueError("one of --request-text or --request-file is required")
    if not text.strip():
        raise ValueError("request must be non-empty")
    return text.strip()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        if args.state_store_root is not None:
            root = args.state_store_root.resolve()
            settings = replace(
                settings,
                state_store_root=str(root),
                checkpoint_db=str(root / "checkpoints" / "orchestrations.sqlite"),
            )
        raw_request = load_request(request_text=args.request_text, request_file=args.request_file)
        sandbox = None
        if args.sandbox:
            sandbox = SandboxConfig(
                enabled=True,
                repo_path=str(args.repo_path.resolve()),
                command=args.sandbox_command,
                runner_path=settings.sandbox_runner_path or None,
                timeout_ms=settings.sandbox_timeout_ms,
                fail_mode=FailMode(args.fail_mode or settings.sandbox_fail_mode),
            )
        request = OrchestrationRequest(
            request=raw_request,
            context={"repo_path": str(args.repo_path.resolve())},
            sandbox=sandbox,
            execution_policy=ExecutionPolicy(require_approval_for=frozenset(args.require_approval_for)),
        )
    except (OSError, ValueError, ValidationError) as exc:
        logging.error("Unable to load request input: %s", exc)
        return 1

    generator = (
        FixturePlanGenerator()
        if args.fixture
        else LLMPlanGenerator(model_name=settings.planner_model, temperature=settings.planner_temperature)
    )
    orchestrator = Orchestrator(
        builder=TaskGraphBuilder(generator),
        workers=fixture_workers(),
        sandbox=SandboxRunner(container_runtime=settings.container_runtime),
        audit=InMemoryAuditLog(),
        settings=settings,
        checkpointer=open_checkpointer(settings.checkpoint_path()),
        archive=OrchestrationArchive(settings.state_store_path()),
    )

    try:
        state = orchestrator.start(
            request.request,
            request.context,
            request.execution_policy,
            sandbox=request.sandbox,
        )
        while args.auto_approve and state.status == OrchestrationStatus.WAITING_APPROVAL:
            logging.info("Auto-approving task %s", state.pending_approval.task_id)
            state = orchestrator.approve(orchestrator.orchestration_id)
    except Exception as exc:  # noqa: BLE001
        logging.exception("Orchestration failed: %s", exc)
        return 1

    print(f"orchestration_id={state.id}")
    print(f"status={state.status.value}")
    print(f"waves={json.dumps(state.waves)}")
    if state.pending_approval is not None:
        print(f"pending_approval={state.pending_approval.model_dump_json()}")
    print("results:")
    print(json.dumps({task_id: outcome.model_dump(mode="json") for task_id, outcome in state.results.items()}, indent=2))

    return 0 if state.status == OrchestrationStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
