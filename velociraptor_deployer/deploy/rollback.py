"""Restore the last known-good server config after a failed deployment."""

from __future__ import annotations

import os
from pathlib import Path

from velociraptor_deployer.backups import FAILED_KIND, ConfigBackupStore
from velociraptor_deployer.errors import NoBackupError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import ConfigBackup, DeploymentRecord
from velociraptor_deployer.services.base import ServiceManager

LOGGER = get_logger("deploy.rollback")


class RollbackManager:
    """Put the newest backup back in place and restart the service.

    The config being replaced is itself kept as a ``failed`` snapshot, which
    ``ConfigBackupStore.latest`` ignores, so repeated rollbacks keep pointing
    at the same known-good copy.
    """

    def __init__(
        self,
        *,
        backups: ConfigBackupStore | None = None,
        service_manager: ServiceManager | None = None,
    ) -> None:
        self.backups = backups or ConfigBackupStore()
        self.service_manager = service_manager

    def rollback(self, record: DeploymentRecord) -> ConfigBackup:
        """Restore ``record.config_path`` byte for byte and restart its service."""
        config_path = record.config_path
        backup = self.backups.latest(config_path)
        if backup is None:
            raise NoBackupError(f"No configuration backup exists for {config_path}.")

        self.backups.create(config_path, kind=FAILED_KIND)
        restore_bytes(backup.backup_path, config_path)
        LOGGER.info(
            "Configuration restored",
            extra={
                "environment": record.environment,
                "config_path": str(config_path),
                "backup": str(backup.backup_path),
            },
        )
        if record.service_name and self.service_manager is not None:
            status = self.service_manager.status(record.service_name)
            if status.exists:
                self.service_manager.restart(record.service_name)
                LOGGER.info(
                    "Service restarted after rollback",
                    extra={"environment": record.environment, "service": record.service_name},
                )
        return backup


def restore_bytes(backup_path: Path, target_path: Path) -> None:
    """Atomically replace ``target_path`` with the exact bytes of ``backup_path``."""
    payload = backup_path.read_bytes()
    temp_path = target_path.with_name(target_path.name + ".restore")
    try:
        temp_path.write_bytes(payload)
        os.replace(temp_path, target_path)
    finally:
        temp_path.unlink(missing_ok=True)
