"""Subprocess execution and the managed binary's command-line surface."""

from __future__ import annotations

import subprocess  # nosec B404
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.security import REDACTED, mask_secrets

LOGGER = get_logger("runner")

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Completed command with captured output."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return whether the command exited with status zero."""
        return self.returncode == 0

    def describe(self) -> str:
        """Return a short diagnostic string with trimmed output."""
        detail = (self.stderr or self.stdout).strip()
        if len(detail) > 400:
            detail = detail[:400] + "..."
        return f"exit={self.returncode} {detail}".strip()


class CommandRunner:
    """Run external commands without a shell and capture their output.

    A missing executable is reported as exit code 127 and a timeout as 124,
    matching shell conventions, so callers only ever branch on return codes.
    """

    def __init__(self, *, default_timeout: float = 120.0) -> None:
        self.default_timeout = default_timeout

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        secrets: Sequence[str] = (),
        cwd: Path | None = None,
    ) -> CommandResult:
        """Execute ``argv`` and return its result."""
        args = [str(item) for item in argv]
        LOGGER.debug("Running command", extra={"argv": " ".join(mask_secrets(args, secrets))})
        try:
            completed = subprocess.run(  # nosec B603
                args,
                text=True,
                capture_output=True,
                check=False,
                timeout=timeout or self.default_timeout,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            return CommandResult(tuple(args), EXIT_NOT_FOUND, "", str(exc))
        except subprocess.TimeoutExpired:
            return CommandResult(tuple(args), EXIT_TIMEOUT, "", "command timed out")
        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        for secret in secrets:
            if secret:
                stdout = stdout.replace(secret, REDACTED)
                stderr = stderr.replace(secret, REDACTED)
        return CommandResult(tuple(args), completed.returncode, stdout, stderr)


class ManagedBinary:
    """Argument builders for the Velociraptor command-line surface."""

    def __init__(self, binary_path: Path, runner: CommandRunner | None = None) -> None:
        self.binary_path = binary_path
        self.runner = runner or CommandRunner()

    def frontend_argv(self, config_path: Path) -> list[str]:
        """Return the long-running server command line."""
        return [str(self.binary_path), "--config", str(config_path), "frontend"]

    def version(self) -> CommandResult:
        """Run ``version`` as a smoke test."""
        return self.runner.run([str(self.binary_path), "version"], timeout=30)

    def generate_config(self, config_path: Path) -> CommandResult:
        """Run ``config generate`` targeting ``config_path``."""
        return self.runner.run(
            [str(self.binary_path), "config", "generate", "--config", str(config_path)],
            timeout=120,
        )

    def show_config(self, config_path: Path) -> CommandResult:
        """Run ``config show`` which fails on an invalid config."""
        return self.runner.run(
            [str(self.binary_path), "config", "show", "--config", str(config_path)],
            timeout=60,
        )

    def add_user(self, config_path: Path, username: str, secret: str) -> CommandResult:
        """Run ``user add`` for an administrator account."""
        return self.runner.run(
            [
                str(self.binary_path),
                "user",
                "add",
                username,
                "--password",
                secret,
                "--role",
                "administrator",
                "--config",
                str(config_path),
            ],
            timeout=60,
            secrets=(secret,),
        )
