"""Tests for CLI logging configuration behavior."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from velociraptor_deployer.logging_utils import JsonLogFormatter, configure_logging, get_logger


def test_configure_logging_overwrites_previous_run_log(tmp_path: Path) -> None:
    """Each configure call should start a fresh log file for the new run."""
    log_path = tmp_path / "veldeploy.log"

    first_logger = configure_logging(log_file=log_path, verbose=False)
    first_logger.info("from first run")

    second_logger = configure_logging(log_file=log_path, verbose=False)
    second_logger.info("from second run")

    content = log_path.read_text(encoding="utf-8")

    assert "from second run" in content
    assert "from first run" not in content


def test_json_log_lines_carry_structured_extras(tmp_path: Path) -> None:
    log_path = tmp_path / "veldeploy.log"
    configure_logging(log_file=log_path, verbose=True)

    get_logger("deploy.orchestrator").warning(
        "Deployment status changed",
        extra={"environment": "production", "status": "VERIFYING", "path": tmp_path},
    )

    line = json.loads(log_path.read_text(encoding="utf-8").splitlines()[-1])
    assert line["level"] == "WARNING"
    assert line["logger"] == "veldeploy.deploy.orchestrator"
    assert line["environment"] == "production"
    assert line["status"] == "VERIFYING"
    assert line["path"] == str(tmp_path)
    assert "timestamp" in line


def test_text_format_and_level_filtering(tmp_path: Path) -> None:
    log_path = tmp_path / "veldeploy.log"
    logger = configure_logging(log_file=log_path, verbose=False, json_format=False)

    logger.debug("hidden detail")
    logger.info("visible line")

    content = log_path.read_text(encoding="utf-8")
    assert "INFO veldeploy: visible line" in content
    assert "hidden detail" not in content


def test_formatter_includes_exception_text() -> None:
    try:
        raise RuntimeError("kaboom")
    except RuntimeError:
        record = logging.getLogger("veldeploy").makeRecord(
            "veldeploy", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
        )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "failed"
    assert "RuntimeError: kaboom" in payload["exception"]
