"""Download, verify and atomically install the managed binary."""

from __future__ import annotations

import hashlib
import os
import stat
import threading
from dataclasses import dataclass, field
from pathlib import Path

import requests

from velociraptor_deployer.errors import DownloadError, StepWarning, VerificationError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import ReleaseAsset
from velociraptor_deployer.retry import RetryPolicy
from velociraptor_deployer.runner import CommandRunner, ManagedBinary
from velociraptor_deployer.transport import HttpSession, build_session

LOGGER = get_logger("installer")

DOWNLOAD_SUFFIX = ".download"
SIZE_TOLERANCE_BYTES = 1024
CHUNK_SIZE = 1024 * 256


@dataclass(frozen=True)
class InstallResult:
    """What the installer did for one destination."""

    path: Path
    installed: bool
    skipped: bool
    version: str | None = None
    warnings: tuple[StepWarning, ...] = field(default_factory=tuple)


def temp_path_for(dest_path: Path) -> Path:
    """Return the in-progress download path for ``dest_path``."""
    return dest_path.with_name(dest_path.name + DOWNLOAD_SUFFIX)


class ArtifactInstaller:
    """Install a release asset at a destination path."""

    def __init__(
        self,
        *,
        session: HttpSession | None = None,
        runner: CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 300.0,
        smoke_test: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.session = session or build_session()
        self.runner = runner or CommandRunner()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.smoke_test = smoke_test
        self.cancel_event = cancel_event

    @staticmethod
    def needs_install(dest_path: Path, force: bool) -> bool:
        """Return whether ``install`` would download anything."""
        return force or not dest_path.exists()

    def install(self, asset: ReleaseAsset, dest_path: Path, force: bool = False) -> InstallResult:
        """Install ``asset`` at ``dest_path``.

        An existing destination is left alone unless ``force`` is set. The
        ``.download`` temp file never survives this call.
        """
        if not self.needs_install(dest_path, force):
            LOGGER.info(
                "Binary already installed; skipping download", extra={"path": str(dest_path)}
            )
            return InstallResult(path=dest_path, installed=False, skipped=True)

        dest_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = temp_path_for(dest_path)
        try:
            self.retry_policy.call(
                lambda: self._download_and_verify(asset, temp_path),
                retry_on=(DownloadError, VerificationError),
                label=f"Download of {asset.asset_name}",
                cancel_event=self.cancel_event,
            )
            if os.name != "nt":
                mode = temp_path.stat().st_mode
                temp_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            os.replace(temp_path, dest_path)
        except OSError as exc:
            raise DownloadError(f"Could not install {dest_path}: {exc}") from exc
        finally:
            temp_path.unlink(missing_ok=True)

        LOGGER.info(
            "Installed binary",
            extra={"path": str(dest_path), "version": asset.version, "asset": asset.asset_name},
        )
        warnings: list[StepWarning] = []
        if self.smoke_test:
            result = ManagedBinary(dest_path, self.runner).version()
            if not result.ok:
                message = f"'version' smoke test failed: {result.describe()}"
                LOGGER.warning(message, extra={"path": str(dest_path)})
                warnings.append(StepWarning(step="install", message=message))
        return InstallResult(
            path=dest_path,
            installed=True,
            skipped=False,
            version=asset.version,
            warnings=tuple(warnings),
        )

    def _download_and_verify(self, asset: ReleaseAsset, temp_path: Path) -> None:
        """Stream the asset into ``temp_path`` and check size and digest."""
        temp_path.unlink(missing_ok=True)
        digest = hashlib.sha256()
        written = 0
        try:
            response = self.session.get(
                asset.download_url,
                stream=True,
                timeout=self.timeout_seconds,
                allow_redirects=True,
            )
        except requests.RequestException as exc:
            raise DownloadError(f"Download request failed: {exc}") from exc
        try:
            if response.status_code != 200:
                raise DownloadError(f"Download answered HTTP {response.status_code}.")
            with temp_path.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if self.cancel_event is not None and self.cancel_event.is_set():
                        raise DownloadError("Download aborted by shutdown request.")
                    if not chunk:
                        continue
                    handle.write(chunk)
                    digest.update(chunk)
                    written += len(chunk)
        except requests.RequestException as exc:
            raise DownloadError(f"Download interrupted: {exc}") from exc
        finally:
            response.close()

        verify_download(asset, temp_path, written, digest.hexdigest())


def verify_download(asset: ReleaseAsset, temp_path: Path, written: int, sha256: str) -> None:
    """Raise :class:`VerificationError` when the temp file is not the asset."""
    if written <= 0 or not temp_path.exists() or temp_path.stat().st_size == 0:
        raise VerificationError(f"Downloaded file for {asset.asset_name} is empty.")
    if asset.size_bytes > 0 and abs(written - asset.size_bytes) > SIZE_TOLERANCE_BYTES:
        raise VerificationError(
            f"Downloaded {written} bytes but release lists {asset.size_bytes} "
            f"for {asset.asset_name}."
        )
    if asset.sha256 and asset.sha256 != sha256:
        raise VerificationError(f"SHA-256 mismatch for {asset.asset_name}.")
