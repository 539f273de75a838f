from __future__ import annotations

import json

import pytest

from easy_genomics.laboratory_run.contracts import (
    EntityType,
    Laboratory,
    LaboratoryRun,
    LaboratoryRunContractError,
    Operation,
    ProcessingEvent,
)


def _run_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "RunId": "run-001",
        "LaboratoryId": "lab-001",
        "OrganizationId": "org-001",
        "Status": "running",
        "Platform": "AWS HealthOmics",
        "ExternalRunId": "1234567",
        "RunName": "wgs-batch-7",
        "Owner": "alice@example.org",
        "InputS3Url": "s3://bucket/input/",
    }
    payload.update(overrides)
    return payload


def test_laboratory_run_from_payload_normalizes_status_and_keeps_extra_fields() -> None:
    run = LaboratoryRun.from_payload(_run_payload())
    assert run.status == "RUNNING"
    assert run.external_run_id == "1234567"
    assert run.extra == {"InputS3Url": "s3://bucket/input/"}
    assert run.as_dict()["InputS3Url"] == "s3://bucket/input/"
    assert "StatusCheckedAt" not in run.as_dict()


@pytest.mark.parametrize("missing", ["RunId", "LaboratoryId", "OrganizationId", "Status"])
def test_laboratory_run_requires_identity_fields(missing: str) -> None:
    payload = _run_payload()
    payload.pop(missing)
    with pytest.raises(LaboratoryRunContractError):
        LaboratoryRun.from_payload(payload)


def test_with_status_stamps_all_timestamps() -> None:
    run = LaboratoryRun.from_payload(_run_payload())
    updated = run.with_status("completed", checked_at="2026-01-01T00:00:00.000000Z", changed_at="2026-01-01T00:00:00.000000Z")
    assert updated.status == "COMPLETED"
    assert updated.status_checked_at == "2026-01-01T00:00:00.000000Z"
    assert updated.status_changed_at == "2026-01-01T00:00:00.000000Z"
    assert updated.modified_at == "2026-01-01T00:00:00.000000Z"
    assert run.status == "RUNNING"


def test_laboratory_reads_workspace_id() -> None:
    lab = Laboratory.from_payload(
        {"LaboratoryId": "lab-001", "OrganizationId": "org-001", "NextFlowTowerWorkspaceId": "ws-42"}
    )
    assert lab.workspace_id == "ws-42"
    assert lab.as_dict()["NextFlowTowerWorkspaceId"] == "ws-42"


def test_processing_event_for_run_update_groups_by_run_id() -> None:
    run = LaboratoryRun.from_payload(_run_payload())
    event = ProcessingEvent.for_run_update(run, dedup_key="d-1")
    assert event.operation is Operation.UPDATE
    assert event.entity_type is EntityType.LABORATORY_RUN
    assert event.grouping_key == "run-001"
    body = json.loads(event.encode())
    assert body["Operation"] == "UPDATE"
    assert body["Type"] == "LaboratoryRun"
    assert body["Record"]["RunId"] == "run-001"


def test_processing_event_from_body_unwraps_sns_notification() -> None:
    inner = {"Operation": "UPDATE", "Type": "LaboratoryRun", "Record": _run_payload()}
    envelope = json.dumps({"Type": "Notification", "MessageId": "sns-1", "Message": json.dumps(inner)})
    event = ProcessingEvent.from_body(envelope, grouping_key="run-001", dedup_key="d-1")
    assert event.record.run_id == "run-001"
    assert event.dedup_key == "d-1"


@pytest.mark.parametrize(
    "body",
    [
        {"Operation": "UPSERT", "Type": "LaboratoryRun", "Record": _run_payload()},
        {"Operation": "UPDATE", "Type": "Laboratory", "Record": _run_payload()},
        {"Operation": "UPDATE", "Type": "LaboratoryRun", "Record": "run-001"},
        "not-json",
    ],
)
def test_processing_event_rejects_malformed_bodies(body: object) -> None:
    with pytest.raises(LaboratoryRunContractError):
        ProcessingEvent.from_body(body)  # type: ignore[arg-type]


def test_processing_event_rejects_grouping_key_mismatch() -> None:
    body = {"Operation": "UPDATE", "Type": "LaboratoryRun", "Record": _run_payload()}
    with pytest.raises(LaboratoryRunContractError):
        ProcessingEvent.from_body(body, grouping_key="run-999")
