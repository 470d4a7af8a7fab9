"""systemd backend: unit file, daemon-reload, systemctl control."""

from __future__ import annotations

import shlex
from collections.abc import Callable
from pathlib import Path

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import PlatformKind, ServiceDescriptor, ServiceStatus
from velociraptor_deployer.runner import CommandResult, CommandRunner
from velociraptor_deployer.services.base import RESTART_SETTLE_SECONDS, ServiceManager

LOGGER = get_logger("services.systemd")

DEFAULT_UNIT_DIR = Path("/etc/systemd/system")

_START_TYPES = {
    "enabled": "auto",
    "enabled-runtime": "auto",
    "static": "manual",
    "disabled": "manual",
    "masked": "disabled",
}


def render_unit(
    descriptor: ServiceDescriptor,
    command_line: list[str],
) -> str:
    """Render a hardened ``Type=simple`` unit for the service."""
    service_lines = [
        "Type=simple",
        f"ExecStart={shlex.join(command_line)}",
        "Restart=always",
        "RestartSec=10",
        "LimitNOFILE=65536",
        "NoNewPrivileges=true",
        "PrivateTmp=true",
        "ProtectSystem=strict",
        "ProtectHome=true",
    ]
    if descriptor.run_as_user:
        service_lines.insert(1, f"User={descriptor.run_as_user}")
    if descriptor.working_directory is not None:
        service_lines.insert(1, f"WorkingDirectory={descriptor.working_directory}")
    if descriptor.writable_paths:
        joined = " ".join(str(path) for path in descriptor.writable_paths)
        service_lines.append(f"ReadWritePaths={joined}")
    sections = [
        "[Unit]",
        f"Description={descriptor.display_name} ({descriptor.name})",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        *service_lines,
        "",
        "[Install]",
        "WantedBy=multi-user.target",
    ]
    return "\n".join(sections) + "\n"


class SystemdServiceManager(ServiceManager):
    """Manage the service through systemd."""

    platform_kind = PlatformKind.SYSTEMD

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        unit_dir: Path = DEFAULT_UNIT_DIR,
        settle_seconds: float = RESTART_SETTLE_SECONDS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        super().__init__(runner=runner, settle_seconds=settle_seconds, sleep=sleep)
        self.unit_dir = unit_dir

    def unit_path(self, name: str) -> Path:
        """Return the unit file location for ``name``."""
        return self.unit_dir / f"{name}.service"

    def install(
        self,
        descriptor: ServiceDescriptor,
        binary_path: Path,
        config_path: Path,
        *,
        auto_start: bool = True,
    ) -> None:
        """Write the unit, reload the daemon, optionally enable and start."""
        unit_path = self.unit_path(descriptor.name)
        content = render_unit(descriptor, self.command_line(binary_path, config_path))
        try:
            unit_path.parent.mkdir(parents=True, exist_ok=True)
            unit_path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ServiceError(
                f"Could not write unit {unit_path}: {exc}", stage="SERVICE_STARTING"
            ) from exc
        LOGGER.info("Unit file written", extra={"service": descriptor.name, "unit": str(unit_path)})
        self._require(self._systemctl("daemon-reload"), "reload units for", descriptor.name)
        if auto_start:
            self._require(self._systemctl("enable", descriptor.name), "enable", descriptor.name)
            self.start(descriptor.name)

    def uninstall(self, name: str) -> None:
        """Stop, disable and delete the unit."""
        unit_path = self.unit_path(name)
        if not unit_path.exists():
            LOGGER.info("Unit not installed; nothing to remove", extra={"service": name})
            return
        self._systemctl("stop", name)
        self._systemctl("disable", name)
        try:
            unit_path.unlink()
        except OSError as exc:
            raise ServiceError(f"Could not remove unit {unit_path}: {exc}") from exc
        self._require(self._systemctl("daemon-reload"), "reload units for", name)

    def start(self, name: str) -> None:
        self._require(self._systemctl("start", name), "start", name)

    def stop(self, name: str) -> None:
        self._require(self._systemctl("stop", name), "stop", name)

    def logs(self, name: str, lines: int = 50) -> str:
        result = self.runner.run(
            ["journalctl", "-u", name, "-n", str(lines), "--no-pager", "--output", "short-iso"],
            timeout=30,
        )
        return self._require(result, "read logs of", name).stdout

    def _query_status(self, name: str) -> ServiceStatus:
        result = self._systemctl(
            "show",
            name,
            "--property=LoadState",
            "--property=ActiveState",
            "--property=UnitFileState",
        )
        self._require(result, "query", name)
        properties: dict[str, str] = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                properties[key.strip()] = value.strip()
        if properties.get("LoadState", "not-found") == "not-found":
            return ServiceStatus.missing(name)
        unit_file_state = properties.get("UnitFileState", "")
        return ServiceStatus(
            name=name,
            running=properties.get("ActiveState") == "active",
            start_type=_START_TYPES.get(unit_file_state, unit_file_state or "unknown"),
            exists=True,
        )

    def _systemctl(self, *args: str) -> CommandResult:
        return self.runner.run(["systemctl", *args], timeout=90)
