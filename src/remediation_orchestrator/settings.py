from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

VALID_CYCLE_POLICIES = frozenset({"force", "reject"})
VALID_FAIL_MODES = frozenset({"fail", "warn"})
MAX_SANDBOX_TIMEOUT_MS = 1_800_000


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_concurrency: int = 4
    max_sandbox_concurrency: int = 2
    sandbox_enabled: bool = False
    sandbox_timeout_ms: int = 300_000
    sandbox_fail_mode: str = "fail"
    sandbox_runner_path: str = ""
    container_runtime: str = "docker"
    planner_model: str = "gpt-4o"
    planner_temperature: float = 0.3
    recursion_limit: int = 1_000
    state_store_root: str = "state_store"
    checkpoint_db: str = "state_store/checkpoints/orchestrations.sqlite"
    approval_ttl_seconds: int = 0
    terminal_retention_seconds: int = 300
    cycle_policy: str = "force"
    event_queue_size: int = 256
    event_history_size: int = 1_000
    stream_base_url: str = "/api/agents"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_concurrency=_get_env_int("ORCHESTRATOR_MAX_CONCURRENCY", default=4, minimum=1, maximum=64),
            max_sandbox_concurrency=_get_env_int(
                "ORCHESTRATOR_MAX_SANDBOX_CONCURRENCY", default=2, minimum=1, maximum=16
            ),
            sandbox_enabled=_get_env_bool("ORCHESTRATOR_SANDBOX_ENABLED", default=False),
            sandbox_timeout_ms=_get_env_int(
                "ORCHESTRATOR_SANDBOX_TIMEOUT_MS",
                default=300_000,
                minimum=1,
                maximum=MAX_SANDBOX_TIMEOUT_MS,
            ),
            sandbox_fail_mode=os.getenv("ORCHESTRATOR_SANDBOX_FAIL_MODE", "fail"),
            sandbox_runner_path=os.getenv("ORCHESTRATOR_SANDBOX_RUNNER_PATH", ""),
            container_runtime=os.getenv("ORCHESTRATOR_CONTAINER_RUNTIME", "docker"),
            planner_model=os.getenv("ORCHESTRATOR_PLANNER_MODEL", "gpt-4o"),
            planner_temperature=_get_env_float("ORCHESTRATOR_PLANNER_TEMPERATURE", default=0.3),
            recursion_limit=_get_env_int("ORCHESTRATOR_RECURSION_LIMIT", default=1_000, minimum=25),
            state_store_root=os.getenv("ORCHESTRATOR_STATE_STORE_ROOT", "state_store"),
            checkpoint_db=os.getenv("ORCHESTRATOR_CHECKPOINT_DB", "state_store/checkpoints/orchestrations.sqlite"),
            approval_ttl_seconds=_get_env_int("ORCHESTRATOR_APPROVAL_TTL_SECONDS", default=0, minimum=0),
            terminal_retention_seconds=_get_env_int(
                "ORCHESTRATOR_TERMINAL_RETENTION_SECONDS", default=300, minimum=0
            ),
            cycle_policy=os.getenv("ORCHESTRATOR_CYCLE_POLICY", "force"),
            event_queue_size=_get_env_int("ORCHESTRATOR_EVENT_QUEUE_SIZE", default=256, minimum=1),
            event_history_size=_get_env_int("ORCHESTRATOR_EVENT_HISTORY_SIZE", default=1_000, minimum=0),
            stream_base_url=os.getenv("ORCHESTRATOR_STREAM_BASE_URL", "/api/agents"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        fail_mode = self.sandbox_fail_mode.strip().lower()
        if fail_mode not in VALID_FAIL_MODES:
            raise ValueError("ORCHESTRATOR_SANDBOX_FAIL_MODE must be one of: fail, warn")
        cycle_policy = self.cycle_policy.strip().lower()
        if cycle_policy not in VALID_CYCLE_POLICIES:
            raise ValueError("ORCHESTRATOR_CYCLE_POLICY must be one of: force, reject")

        planner_model = self.planner_model.strip()
        if not planner_model:
            raise ValueError("ORCHESTRATOR_PLANNER_MODEL must be non-empty")
        if not 0.0 <= self.planner_temperature <= 2.0:
            raise ValueError(
                f"ORCHESTRATOR_PLANNER_TEMPERATURE must be within [0, 2], got: {self.planner_temperature}"
            )
        if self.sandbox_timeout_ms > MAX_SANDBOX_TIMEOUT_MS:
            raise ValueError(
                f"ORCHESTRATOR_SANDBOX_TIMEOUT_MS must be <= {MAX_SANDBOX_TIMEOUT_MS}, got: {self.sandbox_timeout_ms}"
            )
        if not self.state_store_root.strip():
            raise ValueError("ORCHESTRATOR_STATE_STORE_ROOT must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("ORCHESTRATOR_CHECKPOINT_DB must be non-empty")

        return replace(
            self,
            sandbox_fail_mode=fail_mode,
            cycle_policy=cycle_policy,
            planner_model=planner_model,
            sandbox_runner_path=self.sandbox_runner_path.strip(),
            container_runtime=self.container_runtime.strip(),
            stream_base_url=self.stream_base_url.rstrip("/"),
        )

    def state_store_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.state_store_root)
        if path.is_absolute() or repo_root is None:
            return path
        return repo_root / path

    def checkpoint_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.checkpoint_db)
        if path.is_absolute() or repo_root is None:
            return path
        return repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside ``[minimum, maximum]``.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")
