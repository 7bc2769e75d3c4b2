import logging
from typing import Any, Mapping

import pytest

from remediation_orchestrator.audit import (
    AUDIT_LOG_CAPACITY,
    OMITTED,
    InMemoryAuditLog,
    mask_secrets,
    safe_log_event,
    sanitize_metadata,
)
from remediation_orchestrator.models import AuditSeverity


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("key=sk-" + "a" * 24, "key=sk-***REDACTED***"),
        ("ghp_" + "b" * 36, "ghp_***REDACTED***"),
        ("github_pat_" + "c" * 30, "github_pat_***REDACTED***"),
        ("xoxb-123-abc", "xox*-***REDACTED***"),
        ('{"password": "hunter2"}', '{"password": "***REDACTED***"}'),
        ('apiKey="abc123"', 'apiKey="***REDACTED***"'),
        ("Authorization: Bearer abc.def-ghi", "Authorization: Bearer ***REDACTED***"),
        ("nothing to hide", "nothing to hide"),
    ],
)
def test_mask_secrets(raw: str, expected: str) -> None:
    assert mask_secrets(raw) == expected


def test_sanitize_metadata_omits_sensitive_keys_recursively() -> None:
    metadata = {
        "token": "abc",
        "user": "dev",
        "nested": {"GITHUB_TOKEN": "ghp_x", "note": "Bearer xyz"},
        "items": ["sk-" + "z" * 25, 3],
        "count": 2,
    }
    assert sanitize_metadata(metadata) == {
        "token": OMITTED,
        "user": "dev",
        "nested": {"GITHUB_TOKEN": OMITTED, "note": "Bearer ***REDACTED***"},
        "items": ["sk-***REDACTED***", 3],
        "count": 2,
    }


def test_in_memory_log_keeps_latest_entries_newest_first() -> None:
    log = InMemoryAuditLog(capacity=3)
    for index in range(5):
        log.log_event(f"action-{index}", AuditSeverity.INFO, f"message {index}")

    assert len(log) == 3
    snapshot = log.snapshot()
    assert [entry.action for entry in snapshot] == ["action-4", "action-3", "action-2"]
    assert [entry.id for entry in snapshot] == [5, 4, 3]
    assert [entry.action for entry in log.snapshot(limit=1)] == ["action-4"]


def test_in_memory_log_default_capacity() -> None:
    log = InMemoryAuditLog()
    for index in range(AUDIT_LOG_CAPACITY + 10):
        log.log_event("tick", AuditSeverity.INFO, str(index))
    assert len(log) == AUDIT_LOG_CAPACITY


def test_in_memory_log_sanitizes_on_write() -> None:
    log = InMemoryAuditLog()
    log.log_event("login", AuditSeverity.WARN, "used Bearer abc", {"password": "p", "ok": True})
    entry = log.snapshot()[0]
    assert entry.message == "used Bearer ***REDACTED***"
    assert entry.metadata == {"password": OMITTED, "ok": True}


def test_safe_log_event_swallows_sink_failures(caplog: pytest.LogCaptureFixture) -> None:
    class BrokenSink:
        def log_event(
            self,
            action: str,
            severity: AuditSeverity,
            message: str,
            metadata: Mapping[str, Any] | None = None,
        ) -> None:
            raise ConnectionError("database unavailable")

    with caplog.at_level(logging.WARNING, logger="remediation_orchestrator.audit"):
        safe_log_event(BrokenSink(), "plan_created", AuditSeverity.INFO, "hello")

    assert "database unavailable" in caplog.text


def test_safe_log_event_without_sink_is_a_no_op() -> None:
    safe_log_event(None, "plan_created", AuditSeverity.INFO, "hello")
