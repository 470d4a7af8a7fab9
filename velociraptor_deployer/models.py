"""Data model shared by the deployment components."""

from __future__ import annotations

import subprocess  # nosec B404
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from velociraptor_deployer.errors import StepWarning


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=UTC)


class PlatformKind(str, Enum):
    """Service manager families supported by the lifecycle layer."""

    WINDOWS_SCM = "windows_scm"
    SYSTEMD = "systemd"
    LAUNCHD = "launchd"


class DeploymentStatus(str, Enum):
    """States of one deployment attempt."""

    INIT = "INIT"
    PREFLIGHT = "PREFLIGHT"
    DOWNLOADING = "DOWNLOADING"
    CONFIGURING = "CONFIGURING"
    PROVISIONING = "PROVISIONING"
    SERVICE_STARTING = "SERVICE_STARTING"
    VERIFYING = "VERIFYING"
    READY = "READY"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def terminal(self) -> bool:
        """Return whether no further transition is allowed."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.READY, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK}
)

_PIPELINE = (
    DeploymentStatus.INIT,
    DeploymentStatus.PREFLIGHT,
    DeploymentStatus.DOWNLOADING,
    DeploymentStatus.CONFIGURING,
    DeploymentStatus.PROVISIONING,
    DeploymentStatus.SERVICE_STARTING,
    DeploymentStatus.VERIFYING,
    DeploymentStatus.READY,
)


@dataclass(frozen=True)
class ReleaseAsset:
    """Release binary selected from the feed."""

    version: str
    download_url: str
    size_bytes: int
    asset_name: str
    sha256: str | None = None


@dataclass(frozen=True)
class InstallTarget:
    """Filesystem locations owned by one deployment."""

    install_dir: Path
    data_dir: Path
    binary_path: Path

    @property
    def lock_path(self) -> Path:
        """Advisory lock file guarding this target, kept beside the install dir."""
        return self.install_dir.parent / f".{self.install_dir.name}.deploy.lock"


@dataclass(frozen=True)
class ServiceConfig:
    """Fields of the managed server config this tool is responsible for."""

    gui_port: int
    frontend_port: int
    datastore_path: Path
    filestore_path: Path
    security_level: str = "standard"
    bind_host: str = "0.0.0.0"  # nosec B104


@dataclass(frozen=True)
class ConfigBackup:
    """Immutable copy of a config file taken before it was overwritten."""

    source_path: Path
    backup_path: Path
    timestamp: datetime
    kind: str = "backup"


@dataclass(frozen=True)
class ServiceDescriptor:
    """Identity and execution context of the OS service."""

    name: str
    platform_kind: PlatformKind
    run_as_user: str | None = None
    working_directory: Path | None = None
    writable_paths: tuple[Path, ...] = ()
    log_directory: Path | None = None
    display_name: str = "Velociraptor Server"


@dataclass(frozen=True)
class ServiceStatus:
    """Backend-neutral service state."""

    name: str
    running: bool
    start_type: str
    exists: bool

    @classmethod
    def missing(cls, name: str) -> ServiceStatus:
        """Return the status reported for a service that is not registered."""
        return cls(name=name, running=False, start_type="none", exists=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize status for CLI output."""
        return {
            "name": self.name,
            "running": self.running,
            "startType": self.start_type,
            "exists": self.exists,
        }


@dataclass
class ProcessHandle:
    """A process spawned directly by the supervisor."""

    pid: int
    start_time: datetime
    exit_code: int | None = None
    pid_file: Path | None = None
    log_path: Path | None = None
    process: subprocess.Popen[bytes] | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class ReadinessResult:
    """Outcome of a readiness poll."""

    ready: bool
    url: str
    status_code: int | None = None
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class StatusTransition:
    """One recorded state change."""

    status: DeploymentStatus
    timestamp: datetime


@dataclass
class DeploymentRecord:
    """Audit trail of one deployment attempt."""

    environment: str
    config_path: Path
    service_name: str | None = None
    status: DeploymentStatus = DeploymentStatus.INIT
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    transitions: list[StatusTransition] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    warnings: list[StepWarning] = field(default_factory=list)
    url: str | None = None
    asset: ReleaseAsset | None = None

    def __post_init__(self) -> None:
        if not self.transitions:
            self.transitions.append(StatusTransition(self.status, self.started_at))

    def advance(self, status: DeploymentStatus) -> None:
        """Move to ``status``, enforcing the pipeline order and terminal states."""
        if self.status.terminal:
            raise ValueError(f"Deployment already finished with status {self.status.value}.")
        if status not in (DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK):
            current_index = _PIPELINE.index(self.status)
            if _PIPELINE.index(status) != current_index + 1:
                raise ValueError(
                    f"Illegal deployment transition {self.status.value} -> {status.value}."
                )
        now = utc_now()
        self.status = status
        self.updated_at = now
        self.transitions.append(StatusTransition(status, now))
        if status.terminal:
            self.finished_at = now

    def add_error(self, stage: str, error: BaseException) -> None:
        """Record a failure raised while in ``stage``."""
        self.errors.append(
            {
                "stage": stage,
                "type": type(error).__name__,
                "message": str(error),
                "timestamp": utc_now().isoformat(),
            }
        )

    def add_warning(self, warning: StepWarning) -> None:
        """Record a non-fatal caveat."""
        self.warnings.append(warning)

    @property
    def succeeded(self) -> bool:
        """Return whether the deployment reached READY."""
        return self.status is DeploymentStatus.READY

    def to_dict(self) -> dict[str, Any]:
        """Serialize the record for JSON output."""
        return {
            "environment": self.environment,
            "config_path": str(self.config_path),
            "service_name": self.service_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "transitions": [
                {"status": item.status.value, "timestamp": item.timestamp.isoformat()}
                for item in self.transitions
            ],
            "errors": list(self.errors),
            "warnings": [item.to_dict() for item in self.warnings],
            "url": self.url,
            "version": self.asset.version if self.asset else None,
        }
