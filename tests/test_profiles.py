"""Tests for environment profiles and YAML overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from velociraptor_deployer.configgen import ConfigOverrides
from velociraptor_deployer.deploy.profiles import (
    GIB,
    SERVER_RESERVED_PORTS,
    VELDEPLOY_PROFILES_ENV,
    EnvironmentProfile,
    builtin_profiles,
    load_profile,
)


def test_builtin_profiles_differ_by_environment() -> None:
    profiles = builtin_profiles("linux")

    development = profiles["development"]
    production = profiles["production"]
    assert development.mode == "standalone"
    assert development.bind_host == "127.0.0.1"
    assert production.production is True
    assert production.security_level == "maximum"
    assert production.required_free_bytes == 50 * GIB
    assert production.install_dir == Path("/opt/velociraptor")
    assert profiles["staging"].install_dir == Path("/opt/velociraptor-staging")
    assert profiles["staging"].required_ports == (8100, 8890)


@pytest.mark.parametrize("system", ["linux", "windows", "darwin"])
def test_builtin_ports_avoid_server_internal_listeners(system: str) -> None:
    for profile in builtin_profiles(system).values():
        assert not set(profile.required_ports) & set(SERVER_RESERVED_PORTS), profile.name


@pytest.mark.parametrize(
    ("security_level", "bind_host", "bound", "probed"),
    [
        ("hardened", "10.0.0.5", "127.0.0.1", "127.0.0.1"),
        ("maximum", "0.0.0.0", "127.0.0.1", "127.0.0.1"),
        ("standard", "10.0.0.5", "10.0.0.5", "10.0.0.5"),
        ("standard", "0.0.0.0", "0.0.0.0", "127.0.0.1"),
    ],
)
def test_gui_address_and_readiness_host_share_one_source(
    profile: EnvironmentProfile,
    security_level: str,
    bind_host: str,
    bound: str,
    probed: str,
) -> None:
    adjusted = profile.with_overrides({"security_level": security_level, "bind_host": bind_host})

    overrides = ConfigOverrides.from_service_config(adjusted.service_config)

    assert overrides.gui_bind_address == bound
    assert adjusted.gui_host == probed
    assert adjusted.gui_url() == f"https://{probed}:18889/"


def test_windows_paths_and_binary_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ProgramFiles", r"C:\Program Files")
    monkeypatch.setenv("ProgramData", r"C:\ProgramData")

    production = builtin_profiles("windows")["production"]

    assert production.binary_path.name == "velociraptor.exe"
    assert production.install_dir.name == "Velociraptor"


def test_derived_paths(profile: EnvironmentProfile) -> None:
    assert profile.config_path == profile.install_dir / "server.config.yaml"
    assert profile.pid_file == profile.data_dir / "velociraptor.pid"
    assert profile.install_target.lock_path == (
        profile.install_dir.parent / ".velociraptor.deploy.lock"
    )
    assert profile.service_config.datastore_path == profile.data_dir / "datastore"
    assert profile.gui_url() == "https://127.0.0.1:18889/"


@pytest.mark.parametrize(
    "overrides",
    [
        {"gui_port": 8000, "frontend_port": 8000},
        {"gui_port": 70000},
        {"frontend_port": 8001},
        {"gui_port": 8003},
        {"security_level": "paranoid"},
        {"size_class": "huge"},
        {"mode": "container"},
        {"service_name": "bad name"},
        {"readiness_timeout_seconds": 0},
    ],
)
def test_invalid_settings_are_rejected(
    profile: EnvironmentProfile, overrides: dict[str, object]
) -> None:
    with pytest.raises(ValueError):
        profile.with_overrides(overrides)


def test_unknown_override_keys_are_rejected(profile: EnvironmentProfile) -> None:
    with pytest.raises(ValueError, match="Unknown profile settings: colour"):
        profile.with_overrides({"colour": "blue"})


def test_load_profile_applies_yaml_overrides(tmp_path: Path) -> None:
    profiles_file = tmp_path / "profiles.yaml"
    profiles_file.write_text(
        "profiles:\n"
        "  production:\n"
        f"    install_dir: {tmp_path / 'prod'}\n"
        "    gui_port: 9443\n"
        "    run_as_user: velociraptor\n",
        encoding="utf-8",
    )

    production = load_profile("production", profiles_file)

    assert production.install_dir == tmp_path / "prod"
    assert production.gui_port == 9443
    assert production.run_as_user == "velociraptor"
    assert production.production is True


def test_custom_environment_from_env_var(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    profiles_file = tmp_path / "profiles.yaml"
    profiles_file.write_text("profiles:\n  qa:\n    gui_port: 9000\n", encoding="utf-8")
    monkeypatch.setenv(VELDEPLOY_PROFILES_ENV, str(profiles_file))

    qa = load_profile("qa")

    assert qa.name == "qa"
    assert qa.gui_port == 9000
    assert qa.service_name == "velociraptor-qa"
    assert qa.security_level == "hardened"


def test_unknown_environment_without_overrides_fails() -> None:
    with pytest.raises(ValueError, match="Unknown environment 'qa'"):
        load_profile("qa")


def test_malformed_profiles_file_fails(tmp_path: Path) -> None:
    profiles_file = tmp_path / "profiles.yaml"
    profiles_file.write_text("profiles: [1, 2]\n", encoding="utf-8")

    with pytest.raises(ValueError, match="'profiles' mapping"):
        load_profile("staging", profiles_file)
