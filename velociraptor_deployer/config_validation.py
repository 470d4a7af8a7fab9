"""Shared configuration validation helpers."""

from __future__ import annotations

import re

_SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,79}$")


def require_positive_int(value: int, field_name: str) -> int:
    """Validate a positive integer input and return it."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer.")
    if value <= 0:
        raise ValueError(f"{field_name} must be greater than zero.")
    return value


def validate_port(value: int, field_name: str) -> int:
    """Validate a TCP port number."""
    port = require_positive_int(value, field_name)
    if port > 65535:
        raise ValueError(f"{field_name} must be at most 65535.")
    return port


def validate_choice(value: str, field_name: str, allowed: set[str]) -> str:
    """Validate that a string value is within a set of allowed options."""
    if value not in allowed:
        options = ", ".join(sorted(allowed))
        raise ValueError(f"{field_name} must be one of: {options}.")
    return value


def validate_service_name(value: str) -> str:
    """Validate an OS service name usable by SCM, systemd and launchd alike."""
    cleaned = value.strip()
    if not _SERVICE_NAME_PATTERN.match(cleaned):
        raise ValueError(
            "service name must start with a letter or digit and contain only "
            "letters, digits, '.', '_', '@' or '-'."
        )
    return cleaned


def validate_username(value: str) -> str:
    """Validate an administrator account name."""
    cleaned = value.strip()
    if not cleaned or any(char.isspace() for char in cleaned):
        raise ValueError("username must be non-empty and contain no whitespace.")
    return cleaned
