from pathlib import Path

import pytest

from remediation_orchestrator.settings import RuntimeSettings

_ENV_NAMES = (
    "ORCHESTRATOR_MAX_CONCURRENCY",
    "ORCHESTRATOR_MAX_SANDBOX_CONCURRENCY",
    "ORCHESTRATOR_SANDBOX_ENABLED",
    "ORCHESTRATOR_SANDBOX_TIMEOUT_MS",
    "ORCHESTRATOR_SANDBOX_FAIL_MODE",
    "ORCHESTRATOR_SANDBOX_RUNNER_PATH",
    "ORCHESTRATOR_CONTAINER_RUNTIME",
    "ORCHESTRATOR_PLANNER_MODEL",
    "ORCHESTRATOR_PLANNER_TEMPERATURE",
    "ORCHESTRATOR_RECURSION_LIMIT",
    "ORCHESTRATOR_STATE_STORE_ROOT",
    "ORCHESTRATOR_CHECKPOINT_DB",
    "ORCHESTRATOR_APPROVAL_TTL_SECONDS",
    "ORCHESTRATOR_TERMINAL_RETENTION_SECONDS",
    "ORCHESTRATOR_CYCLE_POLICY",
    "ORCHESTRATOR_EVENT_QUEUE_SIZE",
    "ORCHESTRATOR_EVENT_HISTORY_SIZE",
    "ORCHESTRATOR_STREAM_BASE_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_from_empty_environment() -> None:
    settings = RuntimeSettings.from_env()
    assert settings == RuntimeSettings()
    assert settings.max_concurrency == 4
    assert settings.sandbox_enabled is False
    assert settings.sandbox_fail_mode == "fail"
    assert settings.cycle_policy == "force"
    assert settings.approval_ttl_seconds == 0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("ORCHESTRATOR_SANDBOX_ENABLED", "yes")
    monkeypatch.setenv("ORCHESTRATOR_SANDBOX_TIMEOUT_MS", "60000")
    monkeypatch.setenv("ORCHESTRATOR_SANDBOX_FAIL_MODE", " WARN ")
    monkeypatch.setenv("ORCHESTRATOR_PLANNER_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("ORCHESTRATOR_PLANNER_TEMPERATURE", "0")
    monkeypatch.setenv("ORCHESTRATOR_APPROVAL_TTL_SECONDS", "900")
    monkeypatch.setenv("ORCHESTRATOR_TERMINAL_RETENTION_SECONDS", "0")
    monkeypatch.setenv("ORCHESTRATOR_CYCLE_POLICY", "Reject")
    monkeypatch.setenv("ORCHESTRATOR_STREAM_BASE_URL", "https://ops.example.com/agents/")

    settings = RuntimeSettings.from_env()
    assert settings.max_concurrency == 8
    assert settings.sandbox_enabled is True
    assert settings.sandbox_timeout_ms == 60_000
    assert settings.sandbox_fail_mode == "warn"
    assert settings.planner_model == "gpt-4o-mini"
    assert settings.planner_temperature == 0.0
    assert settings.approval_ttl_seconds == 900
    assert settings.terminal_retention_seconds == 0
    assert settings.cycle_policy == "reject"
    assert settings.stream_base_url == "https://ops.example.com/agents"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("ORCHESTRATOR_MAX_CONCURRENCY", "0", "ORCHESTRATOR_MAX_CONCURRENCY must be >= 1"),
        ("ORCHESTRATOR_MAX_CONCURRENCY", "many", "must be an integer"),
        ("ORCHESTRATOR_SANDBOX_TIMEOUT_MS", "1800001", "must be <= 1800000"),
        ("ORCHESTRATOR_SANDBOX_ENABLED", "maybe", "must be a boolean"),
        ("ORCHESTRATOR_SANDBOX_FAIL_MODE", "ignore", "one of: fail, warn"),
        ("ORCHESTRATOR_CYCLE_POLICY", "skip", "one of: force, reject"),
        ("ORCHESTRATOR_PLANNER_TEMPERATURE", "hot", "must be a number"),
        ("ORCHESTRATOR_PLANNER_TEMPERATURE", "2.5", r"within \[0, 2\]"),
        ("ORCHESTRATOR_PLANNER_MODEL", "  ", "must be non-empty"),
        ("ORCHESTRATOR_RECURSION_LIMIT", "10", "must be >= 25"),
        ("ORCHESTRATOR_TERMINAL_RETENTION_SECONDS", "-1", "must be >= 0"),
        ("ORCHESTRATOR_STATE_STORE_ROOT", "", "must be non-empty"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_relative_paths_resolve_against_repo_root(tmp_path: Path) -> None:
    settings = RuntimeSettings()
    assert settings.state_store_path(tmp_path) == tmp_path / "state_store"
    assert settings.checkpoint_path(tmp_path) == tmp_path / "state_store" / "checkpoints" / "orchestrations.sqlite"
    assert settings.state_store_path() == Path("state_store")

    absolute = RuntimeSettings(state_store_root=str(tmp_path / "elsewhere"))
    assert absolute.state_store_path(Path("/ignored")) == tmp_path / "elsewhere"
