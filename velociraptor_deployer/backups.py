"""Append-only timestamped config backups kept beside the live file."""

from __future__ import annotations

import os
import shutil
from datetime import UTC, datetime
from pathlib import Path

from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import ConfigBackup

LOGGER = get_logger("backups")

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
BACKUP_KIND = "backup"
FAILED_KIND = "failed"


class ConfigBackupStore:
    """Create and look up ``<config>.<kind>.<timestamp>`` sibling copies.

    Backups are written once and never modified; lookup order is the
    timestamp embedded in the file name.
    """

    def create(self, source_path: Path, *, kind: str = BACKUP_KIND) -> ConfigBackup | None:
        """Copy ``source_path`` to a new backup; return None when it does not exist."""
        if not source_path.is_file():
            return None
        timestamp = datetime.now(tz=UTC)
        backup_path = self._backup_path(source_path, kind, timestamp)
        while backup_path.exists():
            timestamp = timestamp.replace(microsecond=(timestamp.microsecond + 1) % 1_000_000)
            backup_path = self._backup_path(source_path, kind, timestamp)
        temp_path = backup_path.with_name(backup_path.name + ".tmp")
        shutil.copyfile(source_path, temp_path)
        os.replace(temp_path, backup_path)
        LOGGER.info(
            "Config backup created",
            extra={"source": str(source_path), "backup": str(backup_path), "kind": kind},
        )
        return ConfigBackup(
            source_path=source_path,
            backup_path=backup_path,
            timestamp=timestamp,
            kind=kind,
        )

    def history(self, source_path: Path, *, kind: str | None = BACKUP_KIND) -> list[ConfigBackup]:
        """Return backups of ``source_path`` oldest first, optionally filtered by kind."""
        if not source_path.parent.is_dir():
            return []
        prefix = source_path.name + "."
        found: list[ConfigBackup] = []
        for candidate in source_path.parent.iterdir():
            name = candidate.name
            if not name.startswith(prefix) or not candidate.is_file():
                continue
            parts = name[len(prefix) :].split(".")
            if len(parts) != 2:
                continue
            entry_kind, raw_timestamp = parts
            if kind is not None and entry_kind != kind:
                continue
            try:
                timestamp = datetime.strptime(raw_timestamp, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
            except ValueError:
                continue
            found.append(
                ConfigBackup(
                    source_path=source_path,
                    backup_path=candidate,
                    timestamp=timestamp,
                    kind=entry_kind,
                )
            )
        return sorted(found, key=lambda item: item.timestamp)

    def latest(self, source_path: Path) -> ConfigBackup | None:
        """Return the most recent pre-write backup of ``source_path``."""
        history = self.history(source_path)
        return history[-1] if history else None

    @staticmethod
    def _backup_path(source_path: Path, kind: str, timestamp: datetime) -> Path:
        return source_path.with_name(
            f"{source_path.name}.{kind}.{timestamp.strftime(TIMESTAMP_FORMAT)}"
        )
