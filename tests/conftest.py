"""Shared fixtures for the veldeploy test suite."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from velociraptor_deployer.deploy.profiles import EnvironmentProfile


@pytest.fixture(autouse=True)
def _isolated_logging_and_audit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep audit records out of $HOME and let caplog see package logs."""
    monkeypatch.setenv("VELDEPLOY_AUDIT_LOG", str(tmp_path / "audit" / "audit.log.jsonl"))
    monkeypatch.delenv("VELDEPLOY_PROFILES", raising=False)
    logger = logging.getLogger("veldeploy")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def profile(tmp_path: Path) -> EnvironmentProfile:
    """A linux service-mode profile rooted under ``tmp_path`` with free test ports."""
    return EnvironmentProfile(
        name="staging",
        install_dir=tmp_path / "srv" / "velociraptor",
        data_dir=tmp_path / "srv" / "data",
        gui_port=18889,
        frontend_port=18000,
        bind_host="127.0.0.1",
        platform="linux",
        arch="amd64",
        require_elevation=False,
        check_network=False,
        manage_firewall=False,
        readiness_timeout_seconds=5,
    )
