"""Append-only audit trail for deployment transitions and failures."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from velociraptor_deployer.security import redact_sensitive_text

VELDEPLOY_AUDIT_LOG_ENV = "VELDEPLOY_AUDIT_LOG"


class DeploymentAuditLog:
    """Append-only JSONL audit logger with redaction safeguards."""

    def __init__(self, path: Path | None = None) -> None:
        """Initialize audit log path and parent directories."""
        self.path = (path or _default_audit_path()).expanduser().resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        *,
        environment: str,
        event: str,
        status: str,
        level: str = "INFO",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one audit event record."""
        payload: dict[str, Any] = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "environment": environment,
            "event": event,
            "status": status,
            "level": level,
            "details": details or {},
        }
        sanitized = _sanitize(payload)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(sanitized, ensure_ascii=True))
            handle.write("\n")

    def read(self) -> list[dict[str, Any]]:
        """Return every recorded event in append order."""
        if not self.path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                events.append(json.loads(line))
        return events


def _default_audit_path() -> Path:
    """Resolve default audit log path from env or home directory."""
    env_value = os.environ.get(VELDEPLOY_AUDIT_LOG_ENV)
    if env_value:
        return Path(env_value)
    return Path.home() / ".veldeploy" / "audit.log.jsonl"


def _sanitize(value: Any) -> Any:
    """Recursively sanitize audit payload values."""
    if isinstance(value, str):
        return redact_sensitive_text(value)
    if isinstance(value, list):
        return [_sanitize(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _sanitize(item) for key, item in value.items()}
    return value
