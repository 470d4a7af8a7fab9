"""Tests for release feed resolution."""

from __future__ import annotations

import pytest
import requests

from tests.fakes import FakeResponse, FakeSession
from velociraptor_deployer.errors import NotFoundError, TransportError
from velociraptor_deployer.release import ReleaseResolver, matches_platform


def _asset(name: str, size: int = 1000, **extra: object) -> dict[str, object]:
    return {
        "name": name,
        "browser_download_url": f"https://example.invalid/download/{name}",
        "size": size,
        **extra,
    }


def _release(*names: str) -> dict[str, object]:
    return {"tag_name": "v0.7.1", "assets": [_asset(name) for name in names]}


def test_resolve_skips_debug_and_collector_assets() -> None:
    session = FakeSession(
        FakeResponse(
            payload=_release(
                "velociraptor-v0.7.1-linux-amd64-debug",
                "velociraptor-collector-v0.7.1-linux-amd64",
                "velociraptor-v0.7.1-linux-amd64.sig",
                "velociraptor-v0.7.1-linux-amd64",
                "velociraptor-v0.7.1-linux-amd64-musl",
            )
        )
    )
    resolver = ReleaseResolver(session=session, feed_url="https://feed.invalid/")

    asset = resolver.resolve("Velocidex/velociraptor", "linux", "amd64")

    assert asset.asset_name == "velociraptor-v0.7.1-linux-amd64"
    assert asset.version == "v0.7.1"
    assert asset.size_bytes == 1000
    assert session.calls[0][0] == (
        "https://feed.invalid/repos/Velocidex/velociraptor/releases/latest"
    )


@pytest.mark.parametrize(
    "names",
    [
        ("velociraptor-v1-windows-amd64-debug.exe", "velociraptor-v1-windows-amd64.exe"),
        ("Velociraptor-Collector-windows-amd64.exe", "velociraptor-v1-windows-amd64.exe"),
        ("velociraptor-v1-windows-amd64.exe",),
    ],
)
def test_chosen_asset_never_contains_excluded_markers(names: tuple[str, ...]) -> None:
    resolver = ReleaseResolver(session=FakeSession(FakeResponse(payload=_release(*names))))

    asset = resolver.resolve("Velocidex/velociraptor", "windows", "amd64")

    assert "debug" not in asset.asset_name.lower()
    assert "collector" not in asset.asset_name.lower()


def test_resolve_reads_sha256_digest() -> None:
    payload = {
        "tag_name": "v0.7.1",
        "assets": [_asset("velociraptor-v0.7.1-darwin-arm64", digest="sha256:ABCDEF")],
    }
    resolver = ReleaseResolver(session=FakeSession(FakeResponse(payload=payload)))

    asset = resolver.resolve("Velocidex/velociraptor", "darwin", "arm64")

    assert asset.sha256 == "abcdef"


def test_no_matching_asset_raises_not_found() -> None:
    resolver = ReleaseResolver(
        session=FakeSession(FakeResponse(payload=_release("velociraptor-v0.7.1-linux-amd64-debug")))
    )

    with pytest.raises(NotFoundError):
        resolver.resolve("Velocidex/velociraptor", "linux", "amd64")


def test_network_failure_is_transport_error_and_not_retried() -> None:
    session = FakeSession(requests.ConnectionError("offline"))
    resolver = ReleaseResolver(session=session)

    with pytest.raises(TransportError):
        resolver.resolve("Velocidex/velociraptor", "linux", "amd64")
    assert len(session.calls) == 1


def test_server_error_is_transport_error() -> None:
    resolver = ReleaseResolver(session=FakeSession(FakeResponse(status_code=503)))

    with pytest.raises(TransportError, match="503"):
        resolver.resolve("Velocidex/velociraptor", "linux", "amd64")


def test_missing_release_is_not_found() -> None:
    resolver = ReleaseResolver(session=FakeSession(FakeResponse(status_code=404)))

    with pytest.raises(NotFoundError):
        resolver.resolve("Velocidex/velociraptor", "linux", "amd64")


def test_invalid_json_is_transport_error() -> None:
    resolver = ReleaseResolver(session=FakeSession(FakeResponse(body=b"<html>")))

    with pytest.raises(TransportError, match="invalid JSON"):
        resolver.resolve("Velocidex/velociraptor", "linux", "amd64")


def test_matches_platform_requires_platform_and_arch() -> None:
    assert matches_platform("velociraptor-v1-linux-arm64", "linux", "arm64")
    assert not matches_platform("velociraptor-v1-linux-amd64", "linux", "arm64")
    assert not matches_platform("velociraptor-v1-linux-amd64.deb", "linux", "amd64")
