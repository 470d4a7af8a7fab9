"""Helpers that keep credentials out of logs and audit records."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Final

REDACTED: Final[str] = "[REDACTED]"

SENSITIVE_KEY_PATTERN: Final[str] = (
    r"[A-Za-z0-9_.-]*(?:token|secret|api[_-]?key|password|passphrase|"
    r"private[_-]?key|access[_-]?key)[A-Za-z0-9_.-]*"
)

_SENSITIVE_INLINE_VALUE_PATTERN: Final[re.Pattern[str]] = re.compile(
    rf"(?i)(\b{SENSITIVE_KEY_PATTERN}\b)(\s*[:=]\s*)([^\s,;]+)"
)
_SENSITIVE_FLAG_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)(--(?:password|secret|token)(?:=|\s+))(\S+)"
)
_BASIC_AUTH_URL_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)(https?://[^:\s/]+:)[^@\s/]+@")
_PRIVATE_KEY_BLOCK_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)


def mask_secrets(argv: Sequence[str], secrets: Iterable[str]) -> list[str]:
    """Return a copy of ``argv`` with every known secret replaced."""
    hidden = [item for item in secrets if item]
    masked: list[str] = []
    for arg in argv:
        for secret in hidden:
            if secret in arg:
                arg = arg.replace(secret, REDACTED)
        masked.append(arg)
    return masked


def redact_sensitive_text(text: str) -> str:
    """Replace secret-like values with redaction placeholders."""
    redacted = _PRIVATE_KEY_BLOCK_PATTERN.sub(f"[{REDACTED[1:-1]}:private_key]", text)
    redacted = _SENSITIVE_FLAG_PATTERN.sub(rf"\1{REDACTED}", redacted)
    redacted = _SENSITIVE_INLINE_VALUE_PATTERN.sub(rf"\1\2{REDACTED}", redacted)
    redacted = _BASIC_AUTH_URL_PATTERN.sub(rf"\1{REDACTED}@", redacted)
    return redacted
