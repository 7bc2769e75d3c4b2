from __future__ import annotations

import logging
import re
import threading
from collections import deque
from datetime import datetime
from typing import Any, Mapping, Protocol

from pydantic import Field

from .models import AuditSeverity, WireModel, utcnow

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
OMITTED = "***OMITTED***"
AUDIT_LOG_CAPACITY = 200

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"sk-[a-zA-Z0-9]{20,}"), f"sk-{REDACTED}"),
    (re.compile(r"ghp_[a-zA-Z0-9]{36,}"), f"ghp_{REDACTED}"),
    (re.compile(r"github_pat_[a-zA-Z0-9_]{22,}"), f"github_pat_{REDACTED}"),
    (re.compile(r"gho_[a-zA-Z0-9]{36}"), f"gho_{REDACTED}"),
    (re.compile(r"xox[baprs]-[a-zA-Z0-9-]+"), f"xox*-{REDACTED}"),
    (
        re.compile(r'("?(?:password|secret|token|api_key|apiKey|accessToken)"?\s*[:=]\s*)"[^"]+"', re.IGNORECASE),
        rf'\1"{REDACTED}"',
    ),
    (re.compile(r"(Bearer\s+)[a-zA-Z0-9._-]+", re.IGNORECASE), rf"\1{REDACTED}"),
)

OMIT_KEYS = frozenset(
    {
        "accessToken",
        "access_token",
        "token",
        "password",
        "secret",
        "apiKey",
        "api_key",
        "OPENAI_API_KEY",
        "GITHUB_TOKEN",
    }
)


def mask_secrets(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with sensitive keys omitted and secrets masked in strings."""
    return {key: _sanitize_value(key, value) for key, value in metadata.items()}


def _sanitize_value(key: str, value: Any) -> Any:
    if key in OMIT_KEYS:
        return OMITTED
    if isinstance(value, str):
        return mask_secrets(value)
    if isinstance(value, Mapping):
        return sanitize_metadata(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value("", item) for item in value]
    return value


class AuditSink(Protocol):
    def log_event(
        self,
        action: str,
        severity: AuditSeverity,
        message: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        ...


class AuditEntry(WireModel):
    id: int
    action: str
    severity: AuditSeverity
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class InMemoryAuditLog:
    """Audit sink keeping the most recent entries in memory, metadata sanitized on write."""

    def __init__(self, capacity: int = AUDIT_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._next_id = 1

    def log_event(
        self,
        action: str,
        severity: AuditSeverity,
        message: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        with self._lock:
            entry = AuditEntry(
                id=self._next_id,
                action=action,
                severity=severity,
                message=mask_secrets(message),
                metadata=sanitize_metadata(metadata or {}),
            )
            self._next_id += 1
            self._entries.append(entry)

    def snapshot(self, limit: int | None = None) -> list[AuditEntry]:
        """Most recent entries, newest first."""
        with self._lock:
            entries = list(reversed(self._entries))
        return entries if limit is None else entries[: max(0, limit)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def safe_log_event(
    sink: AuditSink | None,
    action: str,
    severity: AuditSeverity,
    message: str,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    """Forward to ``sink`` and swallow any failure with a warning."""
    if sink is None:
        return
    try:
        sink.log_event(action, severity, message, metadata)
    except Exception as exc:  # noqa: BLE001 - audit is best-effort.
        logger.warning("Audit sink failed for action %s: %s", action, exc)
