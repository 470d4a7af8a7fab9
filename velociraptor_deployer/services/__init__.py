"""Service manager backends and one-time platform selection."""

from __future__ import annotations

import platform

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.runner import CommandRunner
from velociraptor_deployer.services.base import ServiceManager
from velociraptor_deployer.services.launchd import LaunchdServiceManager
from velociraptor_deployer.services.systemd import SystemdServiceManager
from velociraptor_deployer.services.windows import WindowsServiceManager

_BACKENDS: dict[str, type[ServiceManager]] = {
    "windows": WindowsServiceManager,
    "linux": SystemdServiceManager,
    "darwin": LaunchdServiceManager,
}


def select_service_manager(
    system: str | None = None,
    *,
    runner: CommandRunner | None = None,
) -> ServiceManager:
    """Return the backend for ``system`` (defaults to the running OS)."""
    key = (system or platform.system()).strip().lower()
    backend = _BACKENDS.get(key)
    if backend is None:
        allowed = ", ".join(sorted(_BACKENDS))
        raise ServiceError(f"Unsupported platform '{key}'. Supported: {allowed}")
    return backend(runner=runner)


__all__ = [
    "LaunchdServiceManager",
    "ServiceManager",
    "SystemdServiceManager",
    "WindowsServiceManager",
    "select_service_manager",
]
