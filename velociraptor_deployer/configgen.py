"""Server config generation through the managed binary plus targeted text patches.

The generated file belongs to the binary: its layout, comments and any keys
this tool does not know about must survive. Overrides are therefore applied as
line edits inside the relevant top-level section instead of loading and
re-dumping the whole document. PyYAML is only used read-only, to confirm the
patched values parse back as intended.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from velociraptor_deployer.backups import ConfigBackupStore
from velociraptor_deployer.errors import ConfigurationError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import ConfigBackup, ServiceConfig
from velociraptor_deployer.runner import CommandRunner, ManagedBinary

LOGGER = get_logger("configgen")

STAGING_SUFFIX = ".generating"

_SECTION_PATTERN = re.compile(r"^(?P<name>[A-Za-z_][\w.-]*):[ \t]*(?:#.*)?$")
_KEY_LINE_TEMPLATE = (
    r"^(?P<indent>[ ]+)(?P<key>{key}):(?P<sep>[ \t]*)(?P<value>[^#\r\n]*?)"
    r"(?P<comment>[ \t]+#.*)?(?P<eol>\r?\n)?$"
)

LOOPBACK_ADDRESS = "127.0.0.1"
WILDCARD_ADDRESSES = frozenset({"0.0.0.0", "::", ""})  # nosec B104
HARDENED_LEVELS = frozenset({"hardened", "maximum"})


def gui_bind_address(security_level: str, bind_host: str) -> str:
    """Return the GUI listen address: loopback for hardened levels, else ``bind_host``."""
    return LOOPBACK_ADDRESS if security_level in HARDENED_LEVELS else bind_host


def gui_probe_host(security_level: str, bind_host: str) -> str:
    """Return the address a local client should use to reach the GUI."""
    address = gui_bind_address(security_level, bind_host)
    return LOOPBACK_ADDRESS if address in WILDCARD_ADDRESSES else address


@dataclass(frozen=True)
class ConfigOverrides:
    """Field values to force into the generated config; None leaves a field alone."""

    gui_port: int | None = None
    frontend_port: int | None = None
    datastore_path: Path | None = None
    filestore_path: Path | None = None
    gui_bind_address: str | None = None

    @classmethod
    def from_service_config(cls, config: ServiceConfig) -> ConfigOverrides:
        """Derive overrides from the desired service config."""
        return cls(
            gui_port=config.gui_port,
            frontend_port=config.frontend_port,
            datastore_path=config.datastore_path,
            filestore_path=config.filestore_path,
            gui_bind_address=gui_bind_address(config.security_level, config.bind_host),
        )

    def patches(self) -> list[tuple[str, str, Any]]:
        """Return ``(section, key, value)`` edits for every set field."""
        candidates: list[tuple[str, str, Any]] = [
            ("GUI", "bind_port", self.gui_port),
            ("GUI", "bind_address", self.gui_bind_address),
            ("Frontend", "bind_port", self.frontend_port),
            ("Datastore", "location", self.datastore_path),
            ("Datastore", "filestore_directory", self.filestore_path),
        ]
        return [(section, key, value) for section, key, value in candidates if value is not None]


@dataclass(frozen=True)
class ConfigResult:
    """Outcome of one generate call."""

    config_path: Path
    backup: ConfigBackup | None
    regenerated: bool
    patched_fields: tuple[str, ...]


def format_scalar(value: Any) -> str:
    """Render a scalar the way a YAML emitter would, quoting only when needed."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    text = os.fspath(value) if isinstance(value, os.PathLike) else str(value)
    dumped = yaml.safe_dump(text, default_flow_style=True, width=4096)
    return dumped.splitlines()[0]


def patch_section_value(text: str, section: str, key: str, value: Any) -> str:
    """Set ``section.key`` to ``value`` by editing lines in place.

    Indentation and trailing comments on the edited line are preserved. A
    missing key is inserted directly under the section header and a missing
    section is appended at the end of the document.
    """
    rendered = format_scalar(value)
    lines = text.splitlines(keepends=True)
    header_index = _find_section(lines, section)
    if header_index is None:
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        lines.append(f"{section}:\n")
        lines.append(f"  {key}: {rendered}\n")
        return "".join(lines)

    end_index = _section_end(lines, header_index)
    child_indent = _child_indent(lines, header_index + 1, end_index)
    key_pattern = re.compile(_KEY_LINE_TEMPLATE.format(key=re.escape(key)))
    for index in range(header_index + 1, end_index):
        match = key_pattern.match(lines[index])
        if match is None or len(match.group("indent")) != len(child_indent):
            continue
        current = match.group("value").strip()
        if not current or current[0] in "|>":
            raise ConfigurationError(
                f"{section}.{key} is not a plain scalar and cannot be patched in place.",
                stage="CONFIGURING",
            )
        comment = match.group("comment") or ""
        eol = match.group("eol") or ""
        lines[index] = f"{child_indent}{key}: {rendered}{comment}{eol}"
        return "".join(lines)

    if not lines[header_index].endswith("\n"):
        lines[header_index] += "\n"
    lines.insert(header_index + 1, f"{child_indent}{key}: {rendered}\n")
    return "".join(lines)


def apply_overrides(text: str, overrides: ConfigOverrides) -> tuple[str, tuple[str, ...]]:
    """Apply every override and return the new text plus patched field names."""
    patched = text
    fields: list[str] = []
    for section, key, value in overrides.patches():
        patched = patch_section_value(patched, section, key, value)
        fields.append(f"{section}.{key}")
    return patched, tuple(fields)


def _find_section(lines: list[str], section: str) -> int | None:
    for index, line in enumerate(lines):
        match = _SECTION_PATTERN.match(line.rstrip("\r\n"))
        if match is not None and match.group("name") == section:
            return index
    return None


def _section_end(lines: list[str], header_index: int) -> int:
    """Return the index of the first line after the section body."""
    for index in range(header_index + 1, len(lines)):
        line = lines[index]
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if line[0] not in " \t-":
            return index
    return len(lines)


def _child_indent(lines: list[str], start: int, end: int) -> str:
    for index in range(start, end):
        line = lines[index]
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or stripped.startswith("-"):
            continue
        return line[: len(line) - len(line.lstrip(" "))] or "  "
    return "  "


def verify_overrides(text: str, overrides: ConfigOverrides) -> None:
    """Parse ``text`` read-only and confirm each override took effect."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Patched config is not valid YAML: {exc}", stage="CONFIGURING"
        ) from exc
    if not isinstance(document, dict):
        raise ConfigurationError("Patched config is not a mapping.", stage="CONFIGURING")
    for section, key, expected in overrides.patches():
        block = document.get(section)
        actual = block.get(key) if isinstance(block, dict) else None
        wanted = expected if isinstance(expected, int) else os.fspath(expected)
        if actual != wanted:
            raise ConfigurationError(
                f"{section}.{key} reads back as {actual!r}, expected {wanted!r}.",
                stage="CONFIGURING",
            )


class ConfigGenerator:
    """Produce a validated server config at a target path."""

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        backups: ConfigBackupStore | None = None,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.backups = backups or ConfigBackupStore()

    def generate(
        self,
        binary_path: Path,
        config_path: Path,
        overrides: ConfigOverrides,
        *,
        reuse_existing: bool = False,
    ) -> ConfigResult:
        """Generate, patch, validate and install the config at ``config_path``.

        All work happens on a staging sibling; the live file is backed up and
        then replaced atomically only after validation passes. With
        ``reuse_existing`` an existing config is patched instead of
        regenerated, which keeps its keys and certificates.
        """
        binary = ManagedBinary(binary_path, self.runner)
        staging_path = config_path.with_name(config_path.name + STAGING_SUFFIX)
        regenerated = not (reuse_existing and config_path.is_file())
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            if regenerated:
                baseline = self._generate_baseline(binary, staging_path)
            else:
                baseline = config_path.read_text(encoding="utf-8")
            patched, fields = apply_overrides(baseline, overrides)
            verify_overrides(patched, overrides)
            staging_path.write_text(patched, encoding="utf-8")
            validation = binary.show_config(staging_path)
            if not validation.ok:
                raise ConfigurationError(
                    f"Config validation failed: {validation.describe()}",
                    stage="CONFIGURING",
                )
            backup = self.backups.create(config_path)
            os.replace(staging_path, config_path)
        except OSError as exc:
            raise ConfigurationError(
                f"Could not write {config_path}: {exc}", stage="CONFIGURING"
            ) from exc
        finally:
            staging_path.unlink(missing_ok=True)

        LOGGER.info(
            "Config written",
            extra={
                "config_path": str(config_path),
                "regenerated": regenerated,
                "fields": ",".join(fields),
            },
        )
        return ConfigResult(
            config_path=config_path,
            backup=backup,
            regenerated=regenerated,
            patched_fields=fields,
        )

    @staticmethod
    def _generate_baseline(binary: ManagedBinary, staging_path: Path) -> str:
        """Run ``config generate`` and return the baseline document."""
        staging_path.unlink(missing_ok=True)
        result = binary.generate_config(staging_path)
        if not result.ok:
            raise ConfigurationError(
                f"Config generation failed: {result.describe()}",
                stage="CONFIGURING",
            )
        if staging_path.is_file() and staging_path.stat().st_size > 0:
            return staging_path.read_text(encoding="utf-8")
        # Some releases print the generated config instead of writing it.
        if result.stdout.strip():
            return result.stdout
        raise ConfigurationError("Config generation produced no output.", stage="CONFIGURING")
