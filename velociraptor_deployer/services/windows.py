"""Windows service control manager backend driven through ``sc.exe``."""

from __future__ import annotations

import re
import subprocess  # nosec B404
from collections.abc import Callable
from pathlib import Path

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import PlatformKind, ServiceDescriptor, ServiceStatus
from velociraptor_deployer.runner import CommandResult, CommandRunner
from velociraptor_deployer.services.base import RESTART_SETTLE_SECONDS, ServiceManager

LOGGER = get_logger("services.windows")

SC_EXE = "sc.exe"
ERROR_SERVICE_DOES_NOT_EXIST = 1060
ERROR_SERVICE_ALREADY_RUNNING = 1056
ERROR_SERVICE_NOT_ACTIVE = 1062

FAILURE_RESET_SECONDS = 86400
FAILURE_RESTART_DELAY_MS = 60000
FAILURE_RESTART_ACTIONS = 3

_STATE_PATTERN = re.compile(r"STATE\s*:\s*\d+\s+(?P<state>[A-Z_]+)")
_START_TYPE_PATTERN = re.compile(r"START_TYPE\s*:\s*\d+\s+(?P<start>[A-Z_]+)")
_START_TYPES = {
    "AUTO_START": "auto",
    "DEMAND_START": "manual",
    "DISABLED": "disabled",
    "BOOT_START": "boot",
    "SYSTEM_START": "system",
}


def failure_actions() -> str:
    """Return the ``actions=`` value: three restarts, 60 seconds apart."""
    return "/".join(
        ["restart", str(FAILURE_RESTART_DELAY_MS)] * FAILURE_RESTART_ACTIONS
    )


class WindowsServiceManager(ServiceManager):
    """Manage the service through the Windows service control manager."""

    platform_kind = PlatformKind.WINDOWS_SCM

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        settle_seconds: float = RESTART_SETTLE_SECONDS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        super().__init__(runner=runner, settle_seconds=settle_seconds, sleep=sleep)

    def install(
        self,
        descriptor: ServiceDescriptor,
        binary_path: Path,
        config_path: Path,
        *,
        auto_start: bool = True,
    ) -> None:
        """Create or reconfigure the service and its failure recovery actions."""
        name = descriptor.name
        bin_path = subprocess.list2cmdline(self.command_line(binary_path, config_path))
        start_mode = "auto" if auto_start else "demand"
        exists = self._query_status(name).exists
        verb = "config" if exists else "create"
        args = [
            verb,
            name,
            "binPath=",
            bin_path,
            "start=",
            start_mode,
            "DisplayName=",
            descriptor.display_name,
        ]
        if descriptor.run_as_user:
            args.extend(["obj=", descriptor.run_as_user])
        self._require(self._sc(*args), f"{verb} (sc)", name)
        self._sc("description", name, f"{descriptor.display_name} managed by veldeploy")
        self._require(
            self._sc(
                "failure",
                name,
                "reset=",
                str(FAILURE_RESET_SECONDS),
                "actions=",
                failure_actions(),
            ),
            "configure recovery for",
            name,
        )
        LOGGER.info("Service registered with SCM", extra={"service": name, "verb": verb})
        if auto_start:
            self.start(name)

    def uninstall(self, name: str) -> None:
        """Stop and delete the service."""
        if not self._query_status(name).exists:
            LOGGER.info("Service not registered; nothing to remove", extra={"service": name})
            return
        self._sc("stop", name)
        self._require(self._sc("delete", name), "delete", name)

    def start(self, name: str) -> None:
        result = self._sc("start", name)
        if result.returncode == ERROR_SERVICE_ALREADY_RUNNING:
            return
        self._require(result, "start", name)

    def stop(self, name: str) -> None:
        result = self._sc("stop", name)
        if result.returncode == ERROR_SERVICE_NOT_ACTIVE:
            return
        self._require(result, "stop", name)

    def logs(self, name: str, lines: int = 50) -> str:
        query = f"*[System[Provider[@Name='{name}']]]"
        result = self.runner.run(
            ["wevtutil", "qe", "Application", f"/q:{query}", f"/c:{lines}", "/rd:true", "/f:text"],
            timeout=30,
        )
        return self._require(result, "read logs of", name).stdout

    def _query_status(self, name: str) -> ServiceStatus:
        query = self._sc("query", name)
        if query.returncode == ERROR_SERVICE_DOES_NOT_EXIST:
            return ServiceStatus.missing(name)
        self._require(query, "query", name)
        state_match = _STATE_PATTERN.search(query.stdout)
        if state_match is None:
            raise ServiceError(f"Unrecognised 'sc query' output for '{name}'.")
        config = self._require(self._sc("qc", name), "query config of", name)
        start_match = _START_TYPE_PATTERN.search(config.stdout)
        start_type = "unknown"
        if start_match is not None:
            start_type = _START_TYPES.get(start_match.group("start"), "unknown")
        return ServiceStatus(
            name=name,
            running=state_match.group("state") == "RUNNING",
            start_type=start_type,
            exists=True,
        )

    def _sc(self, *args: str) -> CommandResult:
        return self.runner.run([SC_EXE, *args], timeout=60)
