from __future__ import annotations

import itertools
import json
from pathlib import Path
import sqlite3
import threading
import time
from typing import Any

import pytest

from easy_genomics.event_bus import ChannelMessage, ChannelPublishError, ChannelRef, InMemoryFifoChannel
from easy_genomics.laboratory_run.contracts import Laboratory, LaboratoryRun
from easy_genomics.laboratory_run.errors import TransientDependencyError
from easy_genomics.laboratory_run.execution import ExecutionReferenceError
from easy_genomics.laboratory_run.observability import ReconciliationMetrics
from easy_genomics.laboratory_run.processor import (
    OUTCOME_FAILED,
    OUTCOME_NOOP_MISSING,
    OUTCOME_NOOP_STALE,
    OUTCOME_NOOP_TERMINAL,
    OUTCOME_REJECTED,
    OUTCOME_SKIPPED_AFTER_GROUP_FAILURE,
    OUTCOME_STATUS_CHANGED,
    OUTCOME_STATUS_UNCHANGED,
    LaboratoryRunUpdateProcessor,
)
from easy_genomics.laboratory_run.publish import LaboratoryRunEventPublisher
from easy_genomics.laboratory_run.storage import SqliteLaboratoryRunStore


UPDATE_TOPIC = "arn:aws:sns:us-east-1:000000000000:eg-laboratory-run-update-topic.fifo"
NOTIFY_TOPIC = "arn:aws:sns:us-east-1:000000000000:eg-laboratory-run-notification-topic.fifo"


def _run(run_id: str, status: str, platform: str = "Seqera Cloud", **extra: object) -> LaboratoryRun:
    payload: dict[str, object] = {
        "RunId": run_id,
        "LaboratoryId": "lab-1",
        "OrganizationId": "org-1",
        "Status": status,
        "Platform": platform,
        "ExternalRunId": f"wf-{run_id}",
    }
    payload.update(extra)
    return LaboratoryRun.from_payload(payload)


class _StubExecutionClient:
    def __init__(self, statuses: dict[str, object]) -> None:
        self.statuses = statuses
        self.calls: list[tuple[str, str | None]] = []

    def get_run_status(self, run: LaboratoryRun, laboratory: Laboratory | None) -> str:
        self.calls.append((run.run_id, laboratory.workspace_id if laboratory else None))
        value = self.statuses[run.run_id]
        if isinstance(value, Exception):
            raise value
        return str(value)


class _FlakyChannel:
    def __init__(self) -> None:
        self.fail = False
        self.inner = InMemoryFifoChannel()

    def publish(self, topic: str, group_key: str, dedup_key: str, payload: dict[str, Any]) -> ChannelRef:
        if self.fail:
            raise ChannelPublishError("SNS_PUBLISH_FAILED:InternalError")
        return self.inner.publish(topic, group_key, dedup_key, payload)


class _Harness:
    def __init__(self, tmp_path: Path, runs: list[LaboratoryRun], statuses: dict[str, object]) -> None:
        self.store = SqliteLaboratoryRunStore(locator=str(tmp_path / "laboratory_run.sqlite"))
        self.store.put_laboratory(Laboratory(laboratory_id="lab-1", organization_id="org-1", workspace_id="ws-1"))
        for run in runs:
            self.store.put_run(run)
        self.requests = InMemoryFifoChannel()
        self.requester = LaboratoryRunEventPublisher(channel=self.requests, topic=UPDATE_TOPIC)
        self.notifications = _FlakyChannel()
        self.execution = _StubExecutionClient(statuses)
        self.metrics = ReconciliationMetrics(scope="test")
        ticks = itertools.count(1)
        self.processor = LaboratoryRunUpdateProcessor(
            run_store=self.store,
            laboratory_store=self.store,
            execution_client=self.execution,
            notifier=LaboratoryRunEventPublisher(channel=self.notifications, topic=NOTIFY_TOPIC),
            max_workers=4,
            metrics=self.metrics,
            clock=lambda: f"2026-05-01T00:00:{next(ticks):02d}.000000Z",
        )

    def request(self, *runs: LaboratoryRun) -> list[ChannelMessage]:
        for run in runs:
            self.requester.publish_run_update(run)
        return self.requests.receive(max_messages=10)

    def stored(self, run_id: str) -> LaboratoryRun:
        run = self.store.get_run(run_id)
        assert run is not None
        return run


def test_changed_status_is_stored_and_notified_once_across_redelivery(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING")], {"r1": "SUCCEEDED"})
    messages = harness.request(_run("r1", "RUNNING"))

    first = harness.processor.process_batch(messages)
    assert [item.outcome for item in first.outcomes] == [OUTCOME_STATUS_CHANGED]
    assert first.batch_item_failures() == {"batchItemFailures": []}
    stored = harness.stored("r1")
    assert stored.status == "SUCCEEDED"
    assert stored.status_changed_at == stored.status_checked_at
    notifications = harness.notifications.inner.bodies()
    assert len(notifications) == 1
    assert notifications[0]["Record"]["Status"] == "SUCCEEDED"
    assert harness.execution.calls == [("r1", "ws-1")]

    again = harness.processor.process_batch(messages)
    assert [item.outcome for item in again.outcomes] == [OUTCOME_NOOP_TERMINAL]
    assert harness.stored("r1") == stored
    assert harness.notifications.inner.pending() == 1
    assert len(harness.execution.calls) == 1


def test_regression_and_unknown_foreign_status_only_touch_checked_at(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        [_run("r1", "RUNNING"), _run("r2", "RUNNING")],
        {"r1": "SUBMITTED", "r2": "UNKNOWN"},
    )
    result = harness.processor.process_batch(harness.request(_run("r1", "RUNNING"), _run("r2", "RUNNING")))
    assert [item.outcome for item in result.outcomes] == [OUTCOME_STATUS_UNCHANGED, OUTCOME_STATUS_UNCHANGED]
    for run_id in ("r1", "r2"):
        stored = harness.stored(run_id)
        assert stored.status == "RUNNING"
        assert stored.status_checked_at is not None
        assert stored.status_changed_at is None
    assert harness.notifications.inner.pending() == 0


def test_terminal_and_missing_runs_are_acknowledged_without_querying(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "FAILED")], {})
    result = harness.processor.process_batch(harness.request(_run("r1", "RUNNING"), _run("r-gone", "RUNNING")))
    assert [item.outcome for item in result.outcomes] == [OUTCOME_NOOP_TERMINAL, OUTCOME_NOOP_MISSING]
    assert result.failed_message_ids == []
    assert harness.execution.calls == []


def test_transient_failure_leaves_message_unacknowledged(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        [_run("r1", "RUNNING"), _run("r2", "SUBMITTED")],
        {"r1": TransientDependencyError("seqera_http_503"), "r2": "RUNNING"},
    )
    messages = harness.request(_run("r1", "RUNNING"), _run("r2", "SUBMITTED"))
    result = harness.processor.process_batch(messages)
    by_run = {item.run_id: item for item in result.outcomes}
    assert by_run["r1"].outcome == OUTCOME_FAILED
    assert by_run["r1"].error_code == "TRANSIENT_DEPENDENCY_FAILURE"
    assert by_run["r2"].outcome == OUTCOME_STATUS_CHANGED
    assert result.batch_item_failures() == {"batchItemFailures": [{"itemIdentifier": by_run["r1"].message_id}]}
    assert harness.stored("r1").status_checked_at is None


def test_group_failure_skips_later_messages_for_the_same_run(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        [_run("r1", "RUNNING"), _run("r2", "RUNNING", platform="AWS HealthOmics")],
        {"r1": TransientDependencyError("timeout"), "r2": "COMPLETED"},
    )
    messages = harness.request(_run("r1", "RUNNING"), _run("r1", "RUNNING"), _run("r2", "RUNNING"))
    assert len(messages) == 3
    result = harness.processor.process_batch(messages)
    assert [item.outcome for item in result.outcomes] == [
        OUTCOME_FAILED,
        OUTCOME_SKIPPED_AFTER_GROUP_FAILURE,
        OUTCOME_STATUS_CHANGED,
    ]
    assert result.failed_message_ids == [messages[0].message_id, messages[1].message_id]
    assert [call[0] for call in harness.execution.calls].count("r1") == 1
    assert ("r2", None) in harness.execution.calls


@pytest.mark.parametrize(
    "error",
    [ExecutionReferenceError("run_id=r1:seqera_workflow_not_found"), ExecutionReferenceError()],
)
def test_invalid_execution_reference_is_rejected_and_acknowledged(tmp_path: Path, error: Exception) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING")], {"r1": error})
    result = harness.processor.process_batch(harness.request(_run("r1", "RUNNING")))
    assert result.outcomes[0].outcome == OUTCOME_REJECTED
    assert result.outcomes[0].error_code == "EXECUTION_REFERENCE_INVALID"
    assert result.failed_message_ids == []


def test_unsupported_platform_is_rejected(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING", platform="Cromwell")], {"r1": "RUNNING"})
    result = harness.processor.process_batch(harness.request(_run("r1", "RUNNING")))
    assert result.outcomes[0].outcome == OUTCOME_REJECTED


def test_malformed_and_non_update_messages_are_rejected(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING")], {"r1": "RUNNING"})
    delete_body = json.dumps({"Operation": "DELETE", "Type": "LaboratoryRun", "Record": _run("r1", "RUNNING").as_dict()})
    messages = [
        ChannelMessage(message_id="m-bad", receipt_handle="h1", body="{", group_key="r1"),
        ChannelMessage(message_id="m-delete", receipt_handle="h2", body=delete_body, group_key="r1"),
    ]
    result = harness.processor.process_batch(messages)
    assert [item.outcome for item in result.outcomes] == [OUTCOME_REJECTED, OUTCOME_REJECTED]
    assert [item.error_code for item in result.outcomes] == ["CONTRACT_INVALID", "OPERATION_UNSUPPORTED"]
    assert harness.metrics.counters["messages_rejected"] == 2


def test_notification_failure_leaves_message_unacknowledged(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "SUBMITTED")], {"r1": "RUNNING"})
    harness.notifications.fail = True
    result = harness.processor.process_batch(harness.request(_run("r1", "SUBMITTED")))
    assert result.outcomes[0].outcome == OUTCOME_FAILED
    assert result.outcomes[0].error_code == "PUBLISH_FAILURE"
    assert harness.stored("r1").status == "RUNNING"


class _RacingStore:
    """Applies a competing write just before the processor's own write."""

    def __init__(self, inner: SqliteLaboratoryRunStore, competing: LaboratoryRun | None) -> None:
        self.inner = inner
        self.competing = competing

    def get_run(self, run_id: str, *, laboratory_id: str | None = None) -> LaboratoryRun | None:
        return self.inner.get_run(run_id, laboratory_id=laboratory_id)

    def get_laboratory(self, laboratory_id: str) -> Laboratory | None:
        return self.inner.get_laboratory(laboratory_id)

    def _race(self) -> None:
        if self.competing is not None:
            self.inner.put_run(self.competing)
            self.competing = None

    def update_run_status(self, run: LaboratoryRun, **kwargs: Any) -> LaboratoryRun:
        self._race()
        return self.inner.update_run_status(run, **kwargs)

    def touch_status_checked(self, run: LaboratoryRun, **kwargs: Any) -> LaboratoryRun:
        self._race()
        return self.inner.touch_status_checked(run, **kwargs)


@pytest.mark.parametrize(
    ("competing", "expected"),
    [
        (_run("r1", "SUCCEEDED"), OUTCOME_NOOP_TERMINAL),
        (_run("r1", "RUNNING", StatusCheckedAt="2099-01-01T00:00:00.000000Z"), OUTCOME_NOOP_STALE),
        (_run("r1", "STOPPING", StatusCheckedAt="2026-01-01T00:00:00.000000Z"), OUTCOME_FAILED),
    ],
)
def test_lost_conditional_write_is_resolved_from_latest_record(
    tmp_path: Path, competing: LaboratoryRun, expected: str
) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING")], {"r1": "RUNNING"})
    racing = _RacingStore(harness.store, competing)
    processor = LaboratoryRunUpdateProcessor(
        run_store=racing,
        laboratory_store=racing,
        execution_client=harness.execution,
        clock=lambda: "2026-05-01T00:00:00.000000Z",
    )
    result = processor.process_batch(harness.request(_run("r1", "RUNNING")))
    assert result.outcomes[0].outcome == expected
    assert result.outcomes[0].acknowledged is (expected != OUTCOME_FAILED)


def test_process_batch_preserves_message_order_in_result(tmp_path: Path) -> None:
    runs = [_run(f"r{index}", "RUNNING", platform="AWS HealthOmics") for index in range(6)]
    harness = _Harness(tmp_path, runs, {run.run_id: "COMPLETED" for run in runs})
    messages = harness.request(*runs)
    result = harness.processor.process_batch(messages)
    assert [item.message_id for item in result.outcomes] == [message.message_id for message in messages]
    assert all(item.outcome == OUTCOME_STATUS_CHANGED for item in result.outcomes)
    assert harness.metrics.counters["status_changed"] == 6
    assert harness.metrics.counters["notifications_published"] == 6


class _OverlapTrackingExecutionClient:
    """Returns scripted statuses per run and records concurrent calls for the same run."""

    def __init__(self, scripts: dict[str, list[str]]) -> None:
        self.scripts = {run_id: list(values) for run_id, values in scripts.items()}
        self._lock = threading.Lock()
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    def get_run_status(self, run: LaboratoryRun, laboratory: Laboratory | None) -> str:
        with self._lock:
            self.active[run.run_id] = self.active.get(run.run_id, 0) + 1
            self.max_active[run.run_id] = max(self.max_active.get(run.run_id, 0), self.active[run.run_id])
            value = self.scripts[run.run_id].pop(0)
        time.sleep(0.01)
        with self._lock:
            self.active[run.run_id] -= 1
        return value


def test_requests_for_one_run_are_applied_in_order_without_overlap(tmp_path: Path) -> None:
    runs = [_run("r1", "PENDING", platform="AWS HealthOmics"), _run("r2", "PENDING", platform="AWS HealthOmics")]
    harness = _Harness(tmp_path, runs, {})
    execution = _OverlapTrackingExecutionClient({"r1": ["RUNNING", "COMPLETED"], "r2": ["STARTING"]})
    ticks = itertools.count(1)
    processor = LaboratoryRunUpdateProcessor(
        run_store=harness.store,
        laboratory_store=harness.store,
        execution_client=execution,
        notifier=LaboratoryRunEventPublisher(channel=harness.notifications, topic=NOTIFY_TOPIC),
        max_workers=4,
        clock=lambda: f"2026-05-01T00:01:{next(ticks):02d}.000000Z",
    )
    messages = harness.request(runs[0], runs[1], runs[0])
    assert [message.group_key for message in messages] == ["r1", "r2", "r1"]

    result = processor.process_batch(messages)

    assert execution.max_active["r1"] == 1
    r1_outcomes = [item for item in result.outcomes if item.run_id == "r1"]
    assert [(item.outcome, item.previous_status, item.current_status) for item in r1_outcomes] == [
        (OUTCOME_STATUS_CHANGED, "PENDING", "RUNNING"),
        (OUTCOME_STATUS_CHANGED, "RUNNING", "COMPLETED"),
    ]
    assert harness.stored("r1").status == "COMPLETED"
    assert harness.stored("r2").status == "STARTING"
    r1_notified = [body["Record"]["Status"] for body in harness.notifications.inner.bodies() if body["Record"]["RunId"] == "r1"]
    assert r1_notified == ["RUNNING", "COMPLETED"]


def test_redelivery_re_sends_notification_lost_after_committed_write(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "SUBMITTED")], {"r1": "RUNNING"})
    harness.notifications.fail = True
    messages = harness.request(_run("r1", "SUBMITTED"))
    first = harness.processor.process_batch(messages)
    assert first.outcomes[0].outcome == OUTCOME_FAILED
    assert harness.stored("r1").status == "RUNNING"

    harness.notifications.fail = False
    harness.requests.release(messages)
    redelivered = harness.requests.receive(max_messages=10)
    assert redelivered[0].receive_count == 2
    second = harness.processor.process_batch(redelivered)

    assert second.outcomes[0].outcome == OUTCOME_STATUS_UNCHANGED
    assert second.failed_message_ids == []
    assert [body["Record"]["Status"] for body in harness.notifications.inner.bodies()] == ["RUNNING"]
    assert harness.metrics.counters["notifications_republished"] == 1


def test_first_delivery_with_older_snapshot_does_not_re_send(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING")], {"r1": "RUNNING"})
    result = harness.processor.process_batch(harness.request(_run("r1", "SUBMITTED")))
    assert result.outcomes[0].outcome == OUTCOME_STATUS_UNCHANGED
    assert harness.notifications.inner.pending() == 0


def test_undecodable_stored_record_is_rejected_and_acknowledged(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, [_run("r1", "RUNNING"), _run("r2", "RUNNING")], {"r2": "SUCCEEDED"})
    conn = sqlite3.connect(tmp_path / "laboratory_run.sqlite")
    with conn:
        conn.execute(
            "UPDATE laboratory_run SET record_json = ? WHERE run_id = ?",
            (json.dumps({"RunId": "r1", "LaboratoryId": "lab-1"}), "r1"),
        )
    conn.close()

    result = harness.processor.process_batch(harness.request(_run("r1", "RUNNING"), _run("r2", "RUNNING")))

    by_run = {item.run_id: item for item in result.outcomes}
    assert by_run["r1"].outcome == OUTCOME_REJECTED
    assert by_run["r1"].error_code == "CONTRACT_INVALID"
    assert by_run["r2"].outcome == OUTCOME_STATUS_CHANGED
    assert result.failed_message_ids == []
    assert harness.execution.calls == [("r2", "ws-1")]
