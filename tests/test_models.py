"""Tests for the deployment record state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from velociraptor_deployer.errors import ProvisioningWarning, StepWarning
from velociraptor_deployer.models import DeploymentRecord, DeploymentStatus


def _record() -> DeploymentRecord:
    return DeploymentRecord("staging", Path("/opt/velociraptor/server.config.yaml"))


def test_record_starts_in_init_with_one_transition() -> None:
    record = _record()

    assert record.status is DeploymentStatus.INIT
    assert [item.status for item in record.transitions] == [DeploymentStatus.INIT]
    assert record.finished_at is None


def test_stages_must_be_entered_in_order() -> None:
    record = _record()
    record.advance(DeploymentStatus.PREFLIGHT)

    with pytest.raises(ValueError, match="PREFLIGHT -> CONFIGURING"):
        record.advance(DeploymentStatus.CONFIGURING)


def test_failure_is_allowed_from_any_stage_and_is_terminal() -> None:
    record = _record()
    record.advance(DeploymentStatus.PREFLIGHT)
    record.advance(DeploymentStatus.FAILED)

    assert record.status.terminal
    assert record.finished_at is not None
    with pytest.raises(ValueError, match="already finished"):
        record.advance(DeploymentStatus.ROLLED_BACK)


def test_ready_is_only_reached_through_the_pipeline() -> None:
    record = _record()
    for status in (
        DeploymentStatus.PREFLIGHT,
        DeploymentStatus.DOWNLOADING,
        DeploymentStatus.CONFIGURING,
        DeploymentStatus.PROVISIONING,
        DeploymentStatus.SERVICE_STARTING,
        DeploymentStatus.VERIFYING,
        DeploymentStatus.READY,
    ):
        record.advance(status)

    assert record.succeeded
    assert len(record.transitions) == 8


def test_to_dict_carries_errors_and_warnings() -> None:
    record = _record()
    record.advance(DeploymentStatus.PREFLIGHT)
    record.add_error("PREFLIGHT", RuntimeError("port 8889 is already in use"))
    record.add_warning(StepWarning(step="firewall", message="netsh denied"))
    record.add_warning(
        ProvisioningWarning(step="provision", message="exists", username="admin", exit_code=1)
    )

    payload = record.to_dict()

    assert payload["status"] == "PREFLIGHT"
    assert payload["errors"][0]["type"] == "RuntimeError"
    assert payload["errors"][0]["stage"] == "PREFLIGHT"
    assert payload["warnings"] == [
        {"step": "firewall", "message": "netsh denied"},
        {"step": "provision", "message": "exists"},
    ]
    assert [item["status"] for item in payload["transitions"]] == ["INIT", "PREFLIGHT"]
    assert payload["version"] is None
