"""Release feed lookup for the managed binary."""

from __future__ import annotations

from typing import Any

import requests

from velociraptor_deployer.errors import NotFoundError, TransportError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import ReleaseAsset
from velociraptor_deployer.transport import HttpSession, build_session

LOGGER = get_logger("release")

DEFAULT_FEED_URL = "https://api.github.com"
DEFAULT_REPO_ID = "Velocidex/velociraptor"

EXCLUDED_MARKERS = ("debug", "collector")
# Detached signatures, checksums and installer packages are never the raw binary.
EXCLUDED_SUFFIXES = (".sig", ".asc", ".sha256", ".md5", ".msi", ".pkg", ".deb", ".rpm")


class ReleaseResolver:
    """Resolve the latest release asset matching a platform and architecture."""

    def __init__(
        self,
        *,
        session: HttpSession | None = None,
        feed_url: str = DEFAULT_FEED_URL,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.session = session or build_session()
        self.feed_url = feed_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def resolve(self, repo_id: str, platform: str, arch: str) -> ReleaseAsset:
        """Return the first non-debug, non-collector asset for platform/arch.

        Raises :class:`TransportError` on any network or API failure and
        :class:`NotFoundError` when the release carries no matching asset.
        Retrying is the caller's decision.
        """
        url = f"{self.feed_url}/repos/{repo_id}/releases/latest"
        LOGGER.info(
            "Querying release feed",
            extra={"repo_id": repo_id, "platform": platform, "arch": arch},
        )
        payload = self._fetch(url)
        version = str(payload.get("tag_name") or payload.get("name") or "unknown")
        assets = payload.get("assets")
        if not isinstance(assets, list):
            raise TransportError(f"Release feed response for {repo_id} has no asset list.")
        for item in assets:
            asset = _parse_asset(item, version)
            if asset is None:
                continue
            if matches_platform(asset.asset_name, platform, arch):
                LOGGER.info(
                    "Resolved release asset",
                    extra={"asset": asset.asset_name, "version": version},
                )
                return asset
        raise NotFoundError(
            f"No {platform}/{arch} asset in release {version} of {repo_id}.",
            stage="DOWNLOADING",
        )

    def _fetch(self, url: str) -> dict[str, Any]:
        """GET the release document and decode it."""
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise TransportError(f"Release feed request failed: {exc}") from exc
        try:
            if response.status_code == 404:
                raise NotFoundError(f"No published release at {url}.", stage="DOWNLOADING")
            if response.status_code != 200:
                raise TransportError(f"Release feed answered HTTP {response.status_code}.")
            try:
                payload = response.json()
            except ValueError as exc:
                raise TransportError("Release feed returned invalid JSON.") from exc
        finally:
            response.close()
        if not isinstance(payload, dict):
            raise TransportError("Release feed returned an unexpected document.")
        return payload


def matches_platform(asset_name: str, platform: str, arch: str) -> bool:
    """Return whether an asset name is a usable binary for platform/arch."""
    lowered = asset_name.lower()
    if platform.lower() not in lowered or arch.lower() not in lowered:
        return False
    if any(marker in lowered for marker in EXCLUDED_MARKERS):
        return False
    return not lowered.endswith(EXCLUDED_SUFFIXES)


def _parse_asset(item: Any, version: str) -> ReleaseAsset | None:
    """Build a release asset from one feed entry, ignoring malformed entries."""
    if not isinstance(item, dict):
        return None
    name = item.get("name")
    url = item.get("browser_download_url")
    if not isinstance(name, str) or not isinstance(url, str):
        return None
    size = item.get("size")
    digest = item.get("digest")
    sha256 = None
    if isinstance(digest, str) and digest.startswith("sha256:"):
        sha256 = digest.split(":", 1)[1].lower()
    return ReleaseAsset(
        version=version,
        download_url=url,
        size_bytes=size if isinstance(size, int) else 0,
        asset_name=name,
        sha256=sha256,
    )
