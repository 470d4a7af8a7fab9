"""Post-deployment health checks for an installed server."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from velociraptor_deployer.deploy.preflight import free_bytes
from velociraptor_deployer.deploy.profiles import GIB, EnvironmentProfile
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.runner import CommandRunner, ManagedBinary
from velociraptor_deployer.services.base import ServiceManager
from velociraptor_deployer.supervisor import ProcessSupervisor, tcp_connectable

LOGGER = get_logger("health")

REQUIRED_CONFIG_SECTIONS = ("GUI", "Frontend", "Datastore")
MIN_FREE_BYTES = 1 * GIB


class CheckState(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class OverallHealth(str, Enum):
    HEALTHY = "HEALTHY"
    HEALTHY_WITH_WARNINGS = "HEALTHY_WITH_WARNINGS"
    UNHEALTHY = "UNHEALTHY"


@dataclass(frozen=True)
class HealthCheck:
    name: str
    state: CheckState
    detail: str


@dataclass
class HealthReport:
    """Individual check results plus the derived overall verdict."""

    environment: str
    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def overall(self) -> OverallHealth:
        states = {check.state for check in self.checks}
        if CheckState.FAIL in states:
            return OverallHealth.UNHEALTHY
        if CheckState.WARN in states:
            return OverallHealth.HEALTHY_WITH_WARNINGS
        return OverallHealth.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "overall": self.overall.value,
            "checks": [
                {"name": check.name, "state": check.state.value, "detail": check.detail}
                for check in self.checks
            ],
        }


class HealthChecker:
    """Inspect binary, data directory, config, process, network and disk."""

    def __init__(
        self,
        *,
        service_manager: ServiceManager,
        runner: CommandRunner | None = None,
        supervisor: ProcessSupervisor | None = None,
        disk_probe: Callable[[Path], int] = free_bytes,
        probe_timeout_seconds: float = 3.0,
    ) -> None:
        self.service_manager = service_manager
        self.runner = runner or CommandRunner()
        self.supervisor = supervisor or ProcessSupervisor()
        self.disk_probe = disk_probe
        self.probe_timeout_seconds = probe_timeout_seconds

    def check(self, profile: EnvironmentProfile) -> HealthReport:
        """Run every check; none of them raises."""
        report = HealthReport(environment=profile.name)
        report.checks.append(self._check_binary(profile.binary_path))
        report.checks.append(self._check_data_dir(profile.data_dir))
        report.checks.append(self._check_config(profile.config_path))
        report.checks.append(self._check_process(profile))
        report.checks.append(self._check_network(profile))
        report.checks.append(self._check_disk(profile.data_dir))
        for check in report.checks:
            LOGGER.info(
                "Health check",
                extra={
                    "environment": profile.name,
                    "check": check.name,
                    "state": check.state.value,
                },
            )
        return report

    def _check_binary(self, binary_path: Path) -> HealthCheck:
        if not binary_path.is_file():
            return HealthCheck("binary", CheckState.FAIL, f"{binary_path} not found")
        if os.name != "nt" and not os.access(binary_path, os.X_OK):
            return HealthCheck("binary", CheckState.FAIL, f"{binary_path} is not executable")
        result = ManagedBinary(binary_path, self.runner).version()
        if not result.ok:
            return HealthCheck("binary", CheckState.WARN, f"'version' failed: {result.describe()}")
        first_line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else "unknown"
        return HealthCheck("binary", CheckState.PASS, first_line)

    @staticmethod
    def _check_data_dir(data_dir: Path) -> HealthCheck:
        if not data_dir.is_dir():
            return HealthCheck("data_dir", CheckState.FAIL, f"{data_dir} missing")
        if not os.access(data_dir, os.W_OK):
            return HealthCheck("data_dir", CheckState.FAIL, f"{data_dir} is not writable")
        return HealthCheck("data_dir", CheckState.PASS, str(data_dir))

    @staticmethod
    def _check_config(config_path: Path) -> HealthCheck:
        try:
            document = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except OSError as exc:
            return HealthCheck("config", CheckState.FAIL, f"cannot read {config_path}: {exc}")
        except yaml.YAMLError as exc:
            return HealthCheck("config", CheckState.FAIL, f"invalid YAML: {exc}")
        if not isinstance(document, dict):
            return HealthCheck("config", CheckState.FAIL, "config is not a mapping")
        missing = [name for name in REQUIRED_CONFIG_SECTIONS if name not in document]
        if missing:
            return HealthCheck("config", CheckState.FAIL, "missing sections: " + ", ".join(missing))
        return HealthCheck("config", CheckState.PASS, str(config_path))

    def _check_process(self, profile: EnvironmentProfile) -> HealthCheck:
        if profile.mode == "standalone":
            handle = self.supervisor.handle_from_pid_file(profile.pid_file)
            if handle is None:
                return HealthCheck("process", CheckState.FAIL, "no pid file")
            if not self.supervisor.is_alive(handle):
                return HealthCheck("process", CheckState.FAIL, f"pid {handle.pid} is not running")
            return HealthCheck("process", CheckState.PASS, f"running (pid {handle.pid})")
        status = self.service_manager.status(profile.service_name)
        if not status.exists:
            return HealthCheck("process", CheckState.FAIL, f"service {status.name} not installed")
        if not status.running:
            return HealthCheck("process", CheckState.FAIL, f"service {status.name} is stopped")
        return HealthCheck("process", CheckState.PASS, f"service running ({status.start_type})")

    def _check_network(self, profile: EnvironmentProfile) -> HealthCheck:
        host = profile.gui_host
        if not tcp_connectable(host, profile.gui_port, self.probe_timeout_seconds):
            return HealthCheck("network", CheckState.FAIL, f"GUI port {profile.gui_port} closed")
        result = self.supervisor.wait_for_readiness(
            profile.gui_port, self.probe_timeout_seconds, host=host
        )
        if not result.ready:
            return HealthCheck(
                "network",
                CheckState.WARN,
                f"port {profile.gui_port} open but web interface not answering",
            )
        return HealthCheck("network", CheckState.PASS, f"{result.url} -> {result.status_code}")

    def _check_disk(self, data_dir: Path) -> HealthCheck:
        try:
            available = self.disk_probe(data_dir)
        except OSError as exc:
            return HealthCheck("disk", CheckState.WARN, f"cannot determine free space: {exc}")
        detail = f"{available / GIB:.1f} GiB free"
        if available < MIN_FREE_BYTES:
            return HealthCheck("disk", CheckState.WARN, detail)
        return HealthCheck("disk", CheckState.PASS, detail)
