import json
from pathlib import Path

import pytest

from remediation_orchestrator.__main__ import load_request, main, parse_args


def test_parse_args_collects_repeatable_roles() -> None:
    args = parse_args(["--request-text", "x", "--require-approval-for", "operator", "--require-approval-for", "executor"])
    assert args.require_approval_for == ["operator", "executor"]
    assert args.fixture is False
    assert args.log_level == "INFO"


def test_load_request_validates_sources(tmp_path: Path) -> None:
    request_file = tmp_path / "request.txt"
    request_file.write_text("  upgrade the parser  \n", encoding="utf-8")
    assert load_request(request_text=None, request_file=request_file) == "upgrade the parser"
    assert load_request(request_text="fix bug X", request_file=None) == "fix bug X"

    with pytest.raises(ValueError, match="cannot be combined"):
        load_request(request_text="a", request_file=request_file)
    with pytest.raises(ValueError, match="required"):
        load_request(request_text=None, request_file=None)
    with pytest.raises(FileNotFoundError):
        load_request(request_text=None, request_file=tmp_path / "missing.txt")
    with pytest.raises(ValueError, match="non-empty"):
        load_request(request_text="   ", request_file=None)


def test_fixture_run_completes_and_archives(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(["--request-text", "fix bug X", "--fixture", "--state-store-root", str(tmp_path)])
    out = capsys.readouterr().out

    assert exit_code == 0
    assert "status=completed" in out
    assert 'waves=[["1"], ["2"]]' in out
    results = json.loads(out.split("results:\n", 1)[1])
    assert set(results) == {"1", "2"}

    archived = list((tmp_path / "orchestrations").glob("orch-*.json"))
    assert len(archived) == 1
    assert (tmp_path / "checkpoints" / "orchestrations.sqlite").is_file()


def test_gated_run_without_auto_approve_exits_non_zero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        [
            "--request-text",
            "fix bug X",
            "--fixture",
            "--require-approval-for",
            "reviewer",
            "--state-store-root",
            str(tmp_path),
        ]
    )
    out = capsys.readouterr().out
    assert exit_code == 1
    assert "status=waiting_approval" in out
    assert "pending_approval=" in out


def test_auto_approve_runs_through_gates(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        [
            "--request-text",
            "fix bug X",
            "--fixture",
            "--require-approval-for",
            "reviewer",
            "--auto-approve",
            "--state-store-root",
            str(tmp_path),
        ]
    )
    assert exit_code == 0
    assert "status=completed" in capsys.readouterr().out


def test_sandbox_flags_validate_each_task(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ORCHESTRATOR_CONTAINER_RUNTIME", "")
    repo = tmp_path / "repo"
    repo.mkdir()
    exit_code = main(
        [
            "--request-text",
            "fix bug X",
            "--fixture",
            "--sandbox",
            "--sandbox-command",
            "exit 2",
            "--repo-path",
            str(repo),
            "--state-store-root",
            str(tmp_path / "store"),
        ]
    )
    out = capsys.readouterr().out
    results = json.loads(out.split("results:\n", 1)[1])

    assert exit_code == 0
    assert results["1"]["status"] == "failed"
    assert results["2"]["status"] == "blocked"


def test_missing_request_returns_error(tmp_path: Path) -> None:
    assert main(["--fixture", "--state-store-root", str(tmp_path)]) == 1
