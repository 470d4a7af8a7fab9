"""Environment profiles: every knob one deployment needs, with YAML overrides."""

from __future__ import annotations

import dataclasses
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from velociraptor_deployer.config_validation import (
    require_positive_int,
    validate_choice,
    validate_port,
    validate_service_name,
    validate_username,
)
from velociraptor_deployer.configgen import gui_probe_host
from velociraptor_deployer.models import InstallTarget, ServiceConfig
from velociraptor_deployer.release import DEFAULT_FEED_URL, DEFAULT_REPO_ID

VELDEPLOY_PROFILES_ENV = "VELDEPLOY_PROFILES"

GIB = 1024**3
SIZE_CLASSES: dict[str, int] = {
    "small": 2 * GIB,
    "medium": 10 * GIB,
    "large": 50 * GIB,
}
SECURITY_LEVELS = {"standard", "hardened", "maximum"}
MODES = {"service", "standalone"}
CONFIG_FILE_NAME = "server.config.yaml"
PID_FILE_NAME = "velociraptor.pid"
# Listeners the generated server config keeps on their default ports.
SERVER_RESERVED_PORTS = {8001: "API", 8003: "Monitoring"}

_SYSTEM_ALIASES = {"windows": "windows", "linux": "linux", "darwin": "darwin"}
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def detect_platform() -> tuple[str, str]:
    """Return the release feed ``(platform, arch)`` names for this host."""
    system = _SYSTEM_ALIASES.get(platform.system().lower(), platform.system().lower())
    machine = platform.machine().lower()
    return system, _ARCH_ALIASES.get(machine, machine)


def binary_name_for(system: str) -> str:
    """Return the installed binary file name for ``system``."""
    return "velociraptor.exe" if system == "windows" else "velociraptor"


def _default_dirs(system: str, environment: str) -> tuple[Path, Path]:
    if environment == "development":
        base = Path.home() / "velociraptor-dev"
        return base, base / "data"
    suffix = "" if environment == "production" else f"-{environment}"
    if system == "windows":
        program_files = Path(os.environ.get("ProgramFiles", r"C:\Program Files"))
        program_data = Path(os.environ.get("ProgramData", r"C:\ProgramData"))
        return program_files / f"Velociraptor{suffix}", program_data / f"Velociraptor{suffix}"
    if system == "darwin":
        return (
            Path(f"/usr/local/velociraptor{suffix}"),
            Path(f"/usr/local/var/velociraptor{suffix}"),
        )
    return Path(f"/opt/velociraptor{suffix}"), Path(f"/var/lib/velociraptor{suffix}")


@dataclass(frozen=True)
class EnvironmentProfile:
    """Settings for deploying into one named environment."""

    name: str
    install_dir: Path
    data_dir: Path
    production: bool = False
    gui_port: int = 8889
    frontend_port: int = 8000
    security_level: str = "standard"
    size_class: str = "small"
    service_name: str = "velociraptor"
    run_as_user: str | None = None
    mode: str = "service"
    auto_start: bool = True
    admin_username: str = "admin"
    readiness_timeout_seconds: int = 120
    repo_id: str = DEFAULT_REPO_ID
    feed_url: str = DEFAULT_FEED_URL
    force_download: bool = False
    regenerate_config: bool = False
    require_elevation: bool = True
    check_network: bool = True
    manage_firewall: bool = True
    bind_host: str = "0.0.0.0"  # nosec B104
    download_attempts: int = 3
    platform: str = field(default_factory=lambda: detect_platform()[0])
    arch: str = field(default_factory=lambda: detect_platform()[1])

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("profile name must be non-empty.")
        validate_port(self.gui_port, "gui_port")
        validate_port(self.frontend_port, "frontend_port")
        if self.gui_port == self.frontend_port:
            raise ValueError("gui_port and frontend_port must differ.")
        for port_name, port in (("gui_port", self.gui_port), ("frontend_port", self.frontend_port)):
            if port in SERVER_RESERVED_PORTS:
                raise ValueError(
                    f"{port_name} {port} is taken by the server's "
                    f"{SERVER_RESERVED_PORTS[port]} listener."
                )
        validate_choice(self.security_level, "security_level", SECURITY_LEVELS)
        validate_choice(self.size_class, "size_class", set(SIZE_CLASSES))
        validate_choice(self.mode, "mode", MODES)
        validate_service_name(self.service_name)
        validate_username(self.admin_username)
        require_positive_int(self.readiness_timeout_seconds, "readiness_timeout_seconds")
        require_positive_int(self.download_attempts, "download_attempts")

    @property
    def binary_path(self) -> Path:
        return self.install_dir / binary_name_for(self.platform)

    @property
    def config_path(self) -> Path:
        return self.install_dir / CONFIG_FILE_NAME

    @property
    def pid_file(self) -> Path:
        return self.data_dir / PID_FILE_NAME

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def install_target(self) -> InstallTarget:
        return InstallTarget(self.install_dir, self.data_dir, self.binary_path)

    @property
    def service_config(self) -> ServiceConfig:
        return ServiceConfig(
            gui_port=self.gui_port,
            frontend_port=self.frontend_port,
            datastore_path=self.data_dir / "datastore",
            filestore_path=self.data_dir / "filestore",
            security_level=self.security_level,
            bind_host=self.bind_host,
        )

    @property
    def gui_host(self) -> str:
        """Address a local client uses to reach the GUI as it will be bound."""
        return gui_probe_host(self.security_level, self.bind_host)

    @property
    def required_ports(self) -> tuple[int, ...]:
        return (self.frontend_port, self.gui_port)

    @property
    def required_free_bytes(self) -> int:
        return SIZE_CLASSES[self.size_class]

    def gui_url(self, host: str | None = None) -> str:
        """Return the admin interface URL."""
        return f"https://{host or self.gui_host}:{self.gui_port}/"

    def with_overrides(self, values: dict[str, Any]) -> EnvironmentProfile:
        """Return a copy with ``values`` applied; unknown keys are rejected."""
        known = {item.name for item in dataclasses.fields(self)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown profile settings: {', '.join(unknown)}")
        coerced = dict(values)
        for key in ("install_dir", "data_dir"):
            if key in coerced and coerced[key] is not None:
                coerced[key] = Path(str(coerced[key])).expanduser()
        return dataclasses.replace(self, **coerced)


def builtin_profiles(system: str | None = None) -> dict[str, EnvironmentProfile]:
    """Return the development, staging and production defaults for ``system``."""
    host_system, host_arch = detect_platform()
    system = system or host_system
    profiles: dict[str, EnvironmentProfile] = {}
    for name in ("development", "staging", "production"):
        install_dir, data_dir = _default_dirs(system, name)
        profiles[name] = EnvironmentProfile(
            name=name,
            install_dir=install_dir,
            data_dir=data_dir,
            platform=system,
            arch=host_arch,
            **_BUILTIN_SETTINGS[name],
        )
    return profiles


_BUILTIN_SETTINGS: dict[str, dict[str, Any]] = {
    "development": {
        "production": False,
        "security_level": "standard",
        "size_class": "small",
        "service_name": "velociraptor-dev",
        "mode": "standalone",
        "require_elevation": False,
        "check_network": True,
        "manage_firewall": False,
        "bind_host": "127.0.0.1",
        "readiness_timeout_seconds": 60,
    },
    "staging": {
        "production": False,
        "security_level": "hardened",
        "size_class": "medium",
        "service_name": "velociraptor-staging",
        "gui_port": 8890,
        "frontend_port": 8100,
    },
    "production": {
        "production": True,
        "security_level": "maximum",
        "size_class": "large",
        "service_name": "velociraptor",
        "readiness_timeout_seconds": 300,
    },
}


def load_profile(name: str, path: Path | None = None) -> EnvironmentProfile:
    """Return profile ``name`` with overrides from a YAML profiles file.

    The file comes from ``path`` or ``VELDEPLOY_PROFILES`` and looks like
    ``profiles: {<name>: {<setting>: <value>}}``. A name absent from the
    built-ins must be defined completely enough in the file, starting from
    the staging defaults.
    """
    profiles = builtin_profiles()
    source = path or _env_profiles_path()
    overrides: dict[str, Any] = {}
    if source is not None:
        overrides = _read_profiles_file(source).get(name, {})
    base = profiles.get(name)
    if base is None:
        if not overrides:
            allowed = ", ".join(sorted(profiles))
            raise ValueError(f"Unknown environment '{name}'. Known: {allowed}")
        install_dir, data_dir = _default_dirs(profiles["staging"].platform, name)
        base = dataclasses.replace(
            profiles["staging"],
            name=name,
            install_dir=install_dir,
            data_dir=data_dir,
            service_name=f"velociraptor-{name}",
        )
    return base.with_overrides(overrides)


def _env_profiles_path() -> Path | None:
    value = os.environ.get(VELDEPLOY_PROFILES_ENV)
    return Path(value).expanduser() if value else None


def _read_profiles_file(path: Path) -> dict[str, dict[str, Any]]:
    """Load the ``profiles`` mapping from a YAML file."""
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Cannot read profiles file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Profiles file {path} is not valid YAML: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict) or not isinstance(document.get("profiles", {}), dict):
        raise ValueError(f"Profiles file {path} must contain a 'profiles' mapping.")
    result: dict[str, dict[str, Any]] = {}
    for key, value in (document.get("profiles") or {}).items():
        if not isinstance(value, dict):
            raise ValueError(f"Profile '{key}' in {path} must be a mapping.")
        result[str(key)] = value
    return result
