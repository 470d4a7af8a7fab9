"""Tests for subprocess execution."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from velociraptor_deployer.runner import (
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    CommandResult,
    CommandRunner,
    ManagedBinary,
)
from velociraptor_deployer.security import REDACTED


def test_run_captures_output_and_exit_code() -> None:
    script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"

    result = CommandRunner().run([sys.executable, "-c", script])

    assert result.returncode == 3
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert not result.ok


def test_missing_executable_maps_to_127(tmp_path: Path) -> None:
    result = CommandRunner().run([str(tmp_path / "nope")])

    assert result.returncode == EXIT_NOT_FOUND


def test_timeout_maps_to_124() -> None:
    result = CommandRunner().run([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.5)

    assert result.returncode == EXIT_TIMEOUT


def test_secrets_are_scrubbed_from_output_and_debug_log(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("DEBUG", logger="veldeploy")

    result = CommandRunner().run(
        [sys.executable, "-c", "import sys; print(sys.argv[1])", "Hunter2-Secret"],
        secrets=["Hunter2-Secret"],
    )

    assert result.stdout.strip() == REDACTED
    assert "Hunter2-Secret" not in caplog.text
    assert all("Hunter2-Secret" not in str(record.__dict__) for record in caplog.records)


def test_describe_trims_long_output() -> None:
    result = CommandResult(("x",), 1, "", "e" * 1000)

    assert result.describe().startswith("exit=1 eee")
    assert result.describe().endswith("...")


def test_managed_binary_argv() -> None:
    binary = ManagedBinary(Path("/opt/velociraptor/velociraptor"))

    assert binary.frontend_argv(Path("/opt/velociraptor/server.config.yaml")) == [
        "/opt/velociraptor/velociraptor",
        "--config",
        "/opt/velociraptor/server.config.yaml",
        "frontend",
    ]
