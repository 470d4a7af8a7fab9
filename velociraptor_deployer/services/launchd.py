"""launchd backend: LaunchDaemons property list plus ``launchctl``."""

from __future__ import annotations

import plistlib
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import PlatformKind, ServiceDescriptor, ServiceStatus
from velociraptor_deployer.runner import CommandResult, CommandRunner
from velociraptor_deployer.services.base import RESTART_SETTLE_SECONDS, ServiceManager

LOGGER = get_logger("services.launchd")

DEFAULT_DAEMON_DIR = Path("/Library/LaunchDaemons")
DEFAULT_LOG_DIR = Path("/Library/Logs/Velociraptor")

_PID_PATTERN = re.compile(r'"PID"\s*=\s*(?P<pid>\d+);')


def build_plist(descriptor: ServiceDescriptor, command_line: list[str]) -> dict[str, Any]:
    """Return the daemon property list for the service."""
    log_dir = descriptor.log_directory or DEFAULT_LOG_DIR
    payload: dict[str, Any] = {
        "Label": descriptor.name,
        "ProgramArguments": command_line,
        "RunAtLoad": True,
        "KeepAlive": True,
        "StandardOutPath": str(log_dir / f"{descriptor.name}.log"),
        "StandardErrorPath": str(log_dir / f"{descriptor.name}.error.log"),
    }
    if descriptor.working_directory is not None:
        payload["WorkingDirectory"] = str(descriptor.working_directory)
    if descriptor.run_as_user:
        payload["UserName"] = descriptor.run_as_user
    return payload


class LaunchdServiceManager(ServiceManager):
    """Manage the service as a launchd daemon.

    ``KeepAlive`` would respawn a merely stopped job, so stop unloads the
    property list and start loads it again.
    """

    platform_kind = PlatformKind.LAUNCHD

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        daemon_dir: Path = DEFAULT_DAEMON_DIR,
        settle_seconds: float = RESTART_SETTLE_SECONDS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        super().__init__(runner=runner, settle_seconds=settle_seconds, sleep=sleep)
        self.daemon_dir = daemon_dir

    def plist_path(self, name: str) -> Path:
        """Return the property list location for ``name``."""
        return self.daemon_dir / f"{name}.plist"

    def install(
        self,
        descriptor: ServiceDescriptor,
        binary_path: Path,
        config_path: Path,
        *,
        auto_start: bool = True,
    ) -> None:
        """Write the property list and load it when ``auto_start`` is set."""
        name = descriptor.name
        plist_path = self.plist_path(name)
        payload = build_plist(descriptor, self.command_line(binary_path, config_path))
        if self._is_loaded(name):
            self._launchctl("unload", str(plist_path))
        try:
            plist_path.parent.mkdir(parents=True, exist_ok=True)
            Path(payload["StandardOutPath"]).parent.mkdir(parents=True, exist_ok=True)
            with plist_path.open("wb") as handle:
                plistlib.dump(payload, handle)
            plist_path.chmod(0o644)
        except OSError as exc:
            raise ServiceError(
                f"Could not write {plist_path}: {exc}", stage="SERVICE_STARTING"
            ) from exc
        LOGGER.info("Daemon plist written", extra={"service": name, "plist": str(plist_path)})
        if auto_start:
            self.start(name)

    def uninstall(self, name: str) -> None:
        """Unload and delete the property list."""
        plist_path = self.plist_path(name)
        if not plist_path.exists():
            LOGGER.info("Daemon not installed; nothing to remove", extra={"service": name})
            return
        if self._is_loaded(name):
            self._launchctl("unload", str(plist_path))
        try:
            plist_path.unlink()
        except OSError as exc:
            raise ServiceError(f"Could not remove {plist_path}: {exc}") from exc

    def start(self, name: str) -> None:
        plist_path = self.plist_path(name)
        if not plist_path.exists():
            raise ServiceError(f"Daemon '{name}' is not installed.", stage="SERVICE_STARTING")
        if self._is_loaded(name):
            self._require(self._launchctl("start", name), "start", name)
            return
        self._require(self._launchctl("load", "-w", str(plist_path)), "load", name)

    def stop(self, name: str) -> None:
        if not self._is_loaded(name):
            return
        self._require(self._launchctl("unload", str(self.plist_path(name))), "unload", name)

    def logs(self, name: str, lines: int = 50) -> str:
        plist_path = self.plist_path(name)
        if not plist_path.exists():
            raise ServiceError(f"Daemon '{name}' is not installed.")
        with plist_path.open("rb") as handle:
            payload = plistlib.load(handle)
        log_path = Path(payload.get("StandardOutPath", DEFAULT_LOG_DIR / f"{name}.log"))
        if not log_path.exists():
            return ""
        content = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        return "\n".join(content[-lines:])

    def _query_status(self, name: str) -> ServiceStatus:
        plist_path = self.plist_path(name)
        if not plist_path.exists():
            return ServiceStatus.missing(name)
        with plist_path.open("rb") as handle:
            payload = plistlib.load(handle)
        start_type = "auto" if payload.get("RunAtLoad") else "manual"
        result = self._launchctl("list", name)
        running = result.ok and _PID_PATTERN.search(result.stdout) is not None
        return ServiceStatus(name=name, running=running, start_type=start_type, exists=True)

    def _is_loaded(self, name: str) -> bool:
        return self._launchctl("list", name).ok

    def _launchctl(self, *args: str) -> CommandResult:
        return self.runner.run(["launchctl", *args], timeout=60)
