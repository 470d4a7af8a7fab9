"""Read-only checks that must all pass before a deployment touches anything."""

from __future__ import annotations

import ctypes
import os
import shutil
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from velociraptor_deployer.deploy.profiles import EnvironmentProfile
from velociraptor_deployer.errors import PreflightError
from velociraptor_deployer.logging_utils import get_logger

LOGGER = get_logger("deploy.preflight")


def is_elevated() -> bool:
    """Return whether the current process runs with administrative rights."""
    if os.name == "nt":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def feed_reachable(url: str, timeout: float = 5.0) -> bool:
    """Return whether a TCP connection to the feed host succeeds."""
    parsed = urlparse(url)
    host = parsed.hostname
    if not host:
        return False
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def free_bytes(path: Path) -> int:
    """Return free space on the volume holding ``path`` or its nearest existing parent."""
    return shutil.disk_usage(existing_ancestor(path)).free


def existing_ancestor(path: Path) -> Path:
    """Return ``path`` or the closest parent that already exists."""
    candidate = path.expanduser().absolute()
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


def port_available(host: str, port: int) -> bool:
    """Return whether a listener could bind ``host:port`` right now."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as probe:
        if hasattr(socket, "SO_EXCLUSIVEADDRUSE"):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)
        try:
            probe.bind((host, port))
        except OSError:
            return False
    return True


@dataclass(frozen=True)
class PreflightReport:
    """Names of checks that passed and messages for those that failed."""

    passed: tuple[str, ...]
    failures: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return not self.failures


class PreflightChecker:
    """Elevation, network, disk space and port availability checks.

    Every probe is injectable; none of them creates or modifies a file.
    """

    def __init__(
        self,
        *,
        elevation_probe: Callable[[], bool] = is_elevated,
        network_probe: Callable[[str], bool] = feed_reachable,
        disk_probe: Callable[[Path], int] = free_bytes,
        port_probe: Callable[[str, int], bool] = port_available,
    ) -> None:
        self.elevation_probe = elevation_probe
        self.network_probe = network_probe
        self.disk_probe = disk_probe
        self.port_probe = port_probe

    def run(
        self, profile: EnvironmentProfile, *, owned_ports: Iterable[int] = ()
    ) -> PreflightReport:
        """Run every check and collect all failures rather than stopping at the first.

        ``owned_ports`` are held by the service being redeployed and are not
        counted as conflicts.
        """
        passed: list[str] = []
        failures: list[str] = []

        if profile.require_elevation:
            if self.elevation_probe():
                passed.append("elevation")
            else:
                failures.append("administrative privileges are required")

        if profile.check_network:
            if self.network_probe(profile.feed_url):
                passed.append("network")
            else:
                failures.append(f"release feed {profile.feed_url} is not reachable")

        try:
            available = self.disk_probe(profile.data_dir)
        except OSError as exc:
            failures.append(f"cannot determine free space for {profile.data_dir}: {exc}")
        else:
            required = profile.required_free_bytes
            if available >= required:
                passed.append("disk")
            else:
                failures.append(
                    f"{_gib(available)} free under {profile.data_dir}, "
                    f"size class '{profile.size_class}' needs {_gib(required)}"
                )

        owned = set(owned_ports)
        for port in profile.required_ports:
            if port in owned:
                passed.append(f"port:{port}")
                continue
            if self.port_probe(profile.bind_host, port):
                passed.append(f"port:{port}")
            else:
                failures.append(f"port {port} is already in use on {profile.bind_host}")

        report = PreflightReport(passed=tuple(passed), failures=tuple(failures))
        LOGGER.info(
            "Preflight finished",
            extra={
                "environment": profile.name,
                "passed": ",".join(report.passed),
                "failed": len(report.failures),
            },
        )
        return report

    def check(
        self, profile: EnvironmentProfile, *, owned_ports: Iterable[int] = ()
    ) -> PreflightReport:
        """Run the checks and raise :class:`PreflightError` if any failed."""
        report = self.run(profile, owned_ports=owned_ports)
        if not report.ok:
            raise PreflightError(list(report.failures))
        return report


def _gib(value: int) -> str:
    return f"{value / 1024**3:.1f} GiB"
