"""Best-effort creation of the administrator account."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from pathlib import Path

from velociraptor_deployer.config_validation import validate_username
from velociraptor_deployer.errors import ProvisioningWarning
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.runner import CommandRunner, ManagedBinary

LOGGER = get_logger("principal")


@dataclass(frozen=True)
class ProvisioningResult:
    """Outcome of an admin principal request.

    ``created`` is True only when the binary reported success; a warning means
    the request failed in a way that usually indicates the account exists.
    """

    username: str
    created: bool
    warning: ProvisioningWarning | None = None


def generate_secret() -> str:
    """Return a random initial password for a freshly provisioned admin."""
    return secrets.token_urlsafe(18)


class PrincipalProvisioner:
    """Create administrator accounts through the binary's ``user add``."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self.runner = runner or CommandRunner()

    def create_admin_principal(
        self,
        binary_path: Path,
        config_path: Path,
        username: str,
        secret: str,
    ) -> ProvisioningResult:
        """Create ``username`` as administrator; never raises on a non-zero exit."""
        name = validate_username(username)
        if not secret:
            raise ValueError("secret must not be empty.")
        result = ManagedBinary(binary_path, self.runner).add_user(config_path, name, secret)
        if result.ok:
            LOGGER.info("Administrator account created", extra={"username": name})
            return ProvisioningResult(username=name, created=True)

        warning = ProvisioningWarning(
            step="provision",
            message=(
                f"'user add {name}' exited with {result.returncode}; "
                "the account probably exists already and keeps its current password."
            ),
            username=name,
            exit_code=result.returncode,
        )
        LOGGER.warning(warning.message, extra={"username": name, "exit_code": result.returncode})
        return ProvisioningResult(username=name, created=False, warning=warning)
