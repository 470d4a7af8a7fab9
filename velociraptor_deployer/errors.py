"""Error taxonomy and warning results for deployment operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from velociraptor_deployer.models import DeploymentRecord


class DeploymentError(RuntimeError):
    """Base class for every failure raised by a deployment component.

    ``stage`` names the orchestrator stage that raised the error and ``record``
    is attached by the orchestrator once the failure has been handled, so CLI
    callers can render the final deployment summary.
    """

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.record: DeploymentRecord | None = None


class TransportError(DeploymentError):
    """Raised when the release feed cannot be reached or answers garbage."""


class NotFoundError(DeploymentError):
    """Raised when no release asset matches the requested platform."""


class DownloadError(DeploymentError):
    """Raised when the binary download fails or is aborted."""


class VerificationError(DeploymentError):
    """Raised when a downloaded artifact is empty, truncated or tampered with."""


class ConfigurationError(DeploymentError):
    """Raised when config generation, patching or validation fails."""


class ServiceError(DeploymentError):
    """Raised when an OS service manager or process launch fails."""


class ReadinessTimeout(DeploymentError):
    """Raised when the service never became reachable within its deadline."""


class LockContentionError(DeploymentError):
    """Raised when another deployment already holds the install target lock."""


class NoBackupError(DeploymentError):
    """Raised when rollback has no configuration backup to restore."""


class PreflightError(DeploymentError):
    """Raised when one or more preflight checks fail before any mutation."""

    def __init__(self, failures: list[str]) -> None:
        super().__init__("Preflight checks failed: " + "; ".join(failures), stage="PREFLIGHT")
        self.failures = list(failures)


@dataclass(frozen=True)
class StepWarning:
    """Non-fatal caveat produced by a step that otherwise succeeded."""

    step: str
    message: str

    def to_dict(self) -> dict[str, str]:
        """Serialize warning for logs and summaries."""
        return {"step": self.step, "message": self.message}


@dataclass(frozen=True)
class ProvisioningWarning(StepWarning):
    """Principal creation returned non-zero; the account may already exist."""

    username: str = ""
    exit_code: int | None = None
