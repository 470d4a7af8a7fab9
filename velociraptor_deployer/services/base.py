"""Service manager contract shared by every OS backend."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import PlatformKind, ServiceDescriptor, ServiceStatus
from velociraptor_deployer.runner import CommandResult, CommandRunner, ManagedBinary

LOGGER = get_logger("services")

RESTART_SETTLE_SECONDS = 3.0


class ServiceManager(ABC):
    """Install, control and inspect the managed binary as an OS service.

    Subclasses implement the platform primitives. ``status`` and ``restart``
    are defined here so that every backend reports the same shape and restarts
    the same way.
    """

    platform_kind: PlatformKind

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        settle_seconds: float = RESTART_SETTLE_SECONDS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.settle_seconds = settle_seconds
        self._sleep = sleep or time.sleep

    def descriptor(
        self,
        name: str,
        *,
        run_as_user: str | None = None,
        working_directory: Path | None = None,
        writable_paths: tuple[Path, ...] = (),
        log_directory: Path | None = None,
    ) -> ServiceDescriptor:
        """Build a descriptor for this backend."""
        return ServiceDescriptor(
            name=name,
            platform_kind=self.platform_kind,
            run_as_user=run_as_user,
            working_directory=working_directory,
            writable_paths=writable_paths,
            log_directory=log_directory,
        )

    @staticmethod
    def command_line(binary_path: Path, config_path: Path) -> list[str]:
        """Return the service command line."""
        return ManagedBinary(binary_path).frontend_argv(config_path)

    @abstractmethod
    def install(
        self,
        descriptor: ServiceDescriptor,
        binary_path: Path,
        config_path: Path,
        *,
        auto_start: bool = True,
    ) -> None:
        """Register (or re-register) the service; with ``auto_start`` enable and start it."""

    @abstractmethod
    def uninstall(self, name: str) -> None:
        """Stop and remove the service registration."""

    @abstractmethod
    def start(self, name: str) -> None:
        """Start the service."""

    @abstractmethod
    def stop(self, name: str) -> None:
        """Stop the service."""

    @abstractmethod
    def logs(self, name: str, lines: int = 50) -> str:
        """Return recent log output of the service."""

    @abstractmethod
    def _query_status(self, name: str) -> ServiceStatus:
        """Return the backend status; may raise on query failure."""

    def status(self, name: str) -> ServiceStatus:
        """Return normalized status, degrading to "not installed" on query errors."""
        try:
            return self._query_status(name)
        except (ServiceError, OSError, ValueError) as exc:
            LOGGER.warning(
                "Service status query failed; reporting as not installed",
                extra={"service": name, "error": str(exc)},
            )
            return ServiceStatus.missing(name)

    def restart(self, name: str) -> None:
        """Stop, wait a fixed settle delay, then start."""
        LOGGER.info("Restarting service", extra={"service": name})
        self.stop(name)
        self._sleep(self.settle_seconds)
        self.start(name)

    def _require(self, result: CommandResult, action: str, name: str) -> CommandResult:
        """Raise :class:`ServiceError` when a control command failed."""
        if not result.ok:
            raise ServiceError(
                f"Failed to {action} service '{name}': {result.describe()}",
                stage="SERVICE_STARTING",
            )
        return result
