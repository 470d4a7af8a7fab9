"""Tests for post-deployment health checks."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path

import pytest

from tests.fakes import (
    DEFAULT_CONFIG,
    FakeRunner,
    FakeServiceManager,
    FakeSupervisor,
    binary_handler,
)
from velociraptor_deployer.deploy.profiles import GIB, EnvironmentProfile
from velociraptor_deployer.health import CheckState, HealthCheck, HealthChecker, OverallHealth
from velociraptor_deployer.models import PlatformKind, ServiceDescriptor


@pytest.fixture
def installed(profile: EnvironmentProfile) -> EnvironmentProfile:
    profile.install_dir.mkdir(parents=True)
    profile.data_dir.mkdir(parents=True)
    profile.binary_path.write_bytes(b"\x7fELF")
    profile.binary_path.chmod(0o755)
    profile.config_path.write_text(DEFAULT_CONFIG, encoding="utf-8")
    return profile


def _checker(
    monkeypatch: pytest.MonkeyPatch,
    *,
    port_open: bool = True,
    ready: bool = True,
    free: int = 10 * GIB,
    running: bool = True,
) -> HealthChecker:
    monkeypatch.setattr(
        "velociraptor_deployer.health.tcp_connectable", lambda _host, _port, _timeout: port_open
    )
    services = FakeServiceManager()
    services.install(
        ServiceDescriptor(name="velociraptor", platform_kind=PlatformKind.SYSTEMD),
        Path("/opt/velociraptor/velociraptor"),
        Path("/opt/velociraptor/server.config.yaml"),
        auto_start=running,
    )
    return HealthChecker(
        service_manager=services,
        runner=FakeRunner(binary_handler()),
        supervisor=FakeSupervisor(ready=ready),
        disk_probe=lambda _path: free,
    )


def _states(checks: list[HealthCheck]) -> dict[str, CheckState]:
    return {check.name: check.state for check in checks}


def test_healthy_installation(
    installed: EnvironmentProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    report = _checker(monkeypatch).check(installed)

    assert report.overall is OverallHealth.HEALTHY
    assert [check.name for check in report.checks] == [
        "binary",
        "data_dir",
        "config",
        "process",
        "network",
        "disk",
    ]
    assert report.to_dict()["overall"] == "HEALTHY"


def test_missing_installation_is_unhealthy(
    profile: EnvironmentProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    report = _checker(monkeypatch, port_open=False, running=False).check(profile)

    states = _states(report.checks)
    assert report.overall is OverallHealth.UNHEALTHY
    assert states["binary"] is CheckState.FAIL
    assert states["data_dir"] is CheckState.FAIL
    assert states["config"] is CheckState.FAIL
    assert states["process"] is CheckState.FAIL
    assert states["network"] is CheckState.FAIL


def test_open_port_without_web_answer_is_a_warning(
    installed: EnvironmentProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    report = _checker(monkeypatch, ready=False).check(installed)

    assert _states(report.checks)["network"] is CheckState.WARN
    assert report.overall is OverallHealth.HEALTHY_WITH_WARNINGS


def test_low_disk_space_is_a_warning(
    installed: EnvironmentProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    report = _checker(monkeypatch, free=GIB // 2).check(installed)

    assert _states(report.checks)["disk"] is CheckState.WARN


def test_config_missing_sections_fails(
    installed: EnvironmentProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    installed.config_path.write_text("GUI:\n  bind_port: 8889\n", encoding="utf-8")

    report = _checker(monkeypatch).check(installed)

    config = next(check for check in report.checks if check.name == "config")
    assert config.state is CheckState.FAIL
    assert "Frontend" in config.detail and "Datastore" in config.detail


def test_standalone_process_is_checked_through_pid_file(
    installed: EnvironmentProfile, monkeypatch: pytest.MonkeyPatch
) -> None:
    standalone = dataclasses.replace(installed, mode="standalone")
    standalone.pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")

    report = _checker(monkeypatch, running=False).check(standalone)

    assert _states(report.checks)["process"] is CheckState.PASS
