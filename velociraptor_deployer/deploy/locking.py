"""Advisory per-target lock that keeps concurrent deployments apart."""

from __future__ import annotations

import os
from pathlib import Path
from types import TracebackType

from velociraptor_deployer.errors import LockContentionError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.supervisor import pid_alive

LOGGER = get_logger("deploy.locking")


class DeploymentLock:
    """Exclusive lock file created with ``O_EXCL`` and holding the owner's pid.

    A lock left by a process that no longer exists is reclaimed once. The file
    is deleted on release, together with any parent directories the lock had
    to create that are still empty, so an attempt that stops at preflight
    leaves nothing behind.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False
        self._created_dirs: list[Path] = []

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock or raise :class:`LockContentionError` immediately."""
        if self._held:
            raise LockContentionError(f"Lock {self.path} is already held by this deployment.")
        self._created_dirs = _missing_dirs(self.path.parent)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                descriptor = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = _read_pid(self.path)
                if attempt == 0 and owner is not None and not pid_alive(owner):
                    self._reclaim(owner)
                    continue
                raise LockContentionError(
                    f"Another deployment holds {self.path} (pid {owner or 'unknown'}).",
                    stage="PREFLIGHT",
                ) from None
            with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
            self._held = True
            LOGGER.debug("Deployment lock acquired", extra={"lock": str(self.path)})
            return

    def release(self) -> None:
        """Drop the lock if this instance holds it."""
        if not self._held:
            return
        if _read_pid(self.path) == os.getpid():
            self.path.unlink(missing_ok=True)
        else:
            LOGGER.warning(
                "Deployment lock changed owner; left in place", extra={"lock": str(self.path)}
            )
        self._held = False
        for directory in self._created_dirs:
            try:
                directory.rmdir()
            except OSError:
                break
        self._created_dirs = []
        LOGGER.debug("Deployment lock released", extra={"lock": str(self.path)})

    def _reclaim(self, stale_pid: int) -> None:
        """Move a dead owner's lock aside, handing it back if another contender won."""
        aside = self.path.with_name(f"{self.path.name}.{os.getpid()}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return
        try:
            moved_pid = _read_pid(aside)
            if moved_pid == stale_pid:
                LOGGER.warning(
                    "Reclaimed stale deployment lock",
                    extra={"lock": str(self.path), "pid": stale_pid},
                )
                return
            try:
                os.link(aside, self.path)
            except OSError as exc:
                LOGGER.warning(
                    "Could not restore deployment lock",
                    extra={"lock": str(self.path), "error": str(exc)},
                )
            raise LockContentionError(
                f"Another deployment holds {self.path} (pid {moved_pid or 'unknown'}).",
                stage="PREFLIGHT",
            )
        finally:
            aside.unlink(missing_ok=True)

    def __enter__(self) -> DeploymentLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


def _read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _missing_dirs(directory: Path) -> list[Path]:
    """Return the not yet existing directories on the way to ``directory``, deepest first."""
    missing: list[Path] = []
    candidate = directory
    while not candidate.exists() and candidate != candidate.parent:
        missing.append(candidate)
        candidate = candidate.parent
    return missing
