"""Tests for preflight checks."""

from __future__ import annotations

import dataclasses
import socket
from pathlib import Path

import pytest

from velociraptor_deployer.deploy.preflight import (
    PreflightChecker,
    existing_ancestor,
    port_available,
)
from velociraptor_deployer.deploy.profiles import GIB, EnvironmentProfile
from velociraptor_deployer.errors import PreflightError


def _checker(
    *,
    elevated: bool = True,
    reachable: bool = True,
    free: int = 100 * GIB,
    busy_ports: frozenset[int] = frozenset(),
) -> PreflightChecker:
    return PreflightChecker(
        elevation_probe=lambda: elevated,
        network_probe=lambda _url: reachable,
        disk_probe=lambda _path: free,
        port_probe=lambda _host, port: port not in busy_ports,
    )


def test_all_checks_pass(profile: EnvironmentProfile) -> None:
    strict = dataclasses.replace(profile, require_elevation=True, check_network=True)

    report = _checker().check(strict)

    assert report.ok
    assert set(report.passed) == {"elevation", "network", "disk", "port:18000", "port:18889"}


def test_every_failure_is_collected(profile: EnvironmentProfile) -> None:
    strict = dataclasses.replace(profile, require_elevation=True, check_network=True)
    checker = _checker(elevated=False, reachable=False, free=1, busy_ports=frozenset({18889}))

    with pytest.raises(PreflightError) as excinfo:
        checker.check(strict)

    failures = excinfo.value.failures
    assert len(failures) == 4
    assert any("administrative" in item for item in failures)
    assert any("not reachable" in item for item in failures)
    assert any("size class 'small'" in item for item in failures)
    assert any("port 18889" in item for item in failures)
    assert excinfo.value.stage == "PREFLIGHT"


def test_skipped_checks_are_not_run(profile: EnvironmentProfile) -> None:
    def explode() -> bool:
        raise AssertionError("elevation probe should not run")

    checker = PreflightChecker(
        elevation_probe=explode,
        network_probe=lambda _url: False,
        disk_probe=lambda _path: 100 * GIB,
        port_probe=lambda _host, _port: True,
    )

    assert checker.run(profile).ok


def test_owned_ports_are_not_conflicts(profile: EnvironmentProfile) -> None:
    checker = _checker(busy_ports=frozenset({18889, 18000}))

    assert checker.run(profile, owned_ports=(18889, 18000)).ok
    assert not checker.run(profile, owned_ports=(18889,)).ok


def test_disk_check_error_is_a_failure(profile: EnvironmentProfile) -> None:
    def broken(_path: Path) -> int:
        raise OSError("no such volume")

    checker = PreflightChecker(
        elevation_probe=lambda: True,
        network_probe=lambda _url: True,
        disk_probe=broken,
        port_probe=lambda _host, _port: True,
    )

    report = checker.run(profile)

    assert not report.ok
    assert "no such volume" in report.failures[0]


def test_preflight_creates_nothing(profile: EnvironmentProfile, tmp_path: Path) -> None:
    PreflightChecker(elevation_probe=lambda: True, network_probe=lambda _url: True).run(profile)

    assert not (tmp_path / "srv").exists()


def test_port_available_detects_listener() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = int(listener.getsockname()[1])

        assert port_available("127.0.0.1", port) is False


def test_existing_ancestor_walks_up(tmp_path: Path) -> None:
    assert existing_ancestor(tmp_path / "a" / "b" / "c") == tmp_path.absolute()
