"""Run update processor: reconcile queued requests against the execution service.

Acknowledgement is the only retry mechanism. A message is acknowledged once
its effect is durable (store write, plus change notification when the status
moved) or once it is known to be a no-op. Anything else is left for the
channel to redeliver.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Sequence

from easy_genomics.event_bus import ChannelMessage

from .contracts import Laboratory, LaboratoryRun, LaboratoryRunContractError, Operation, ProcessingEvent
from .errors import ConditionFailedError, LaboratoryRunError, reason_code
from .execution import ExecutionReferenceError, ExecutionServiceClient
from .observability import ReconciliationMetrics
from .publish import LaboratoryRunEventPublisher
from .storage import LaboratoryRunStore, LaboratoryStore
from .taxonomy import (
    PLATFORM_SEQERA,
    LaboratoryRunTaxonomyError,
    can_transition,
    is_terminal_status,
    translate_foreign_status,
)


logger = logging.getLogger("easy_genomics.laboratory_run.processor")

OUTCOME_STATUS_CHANGED = "STATUS_CHANGED"
OUTCOME_STATUS_UNCHANGED = "STATUS_UNCHANGED"
OUTCOME_NOOP_TERMINAL = "NOOP_TERMINAL"
OUTCOME_NOOP_MISSING = "NOOP_MISSING"
OUTCOME_NOOP_STALE = "NOOP_STALE"
OUTCOME_REJECTED = "REJECTED"
OUTCOME_FAILED = "FAILED"
OUTCOME_SKIPPED_AFTER_GROUP_FAILURE = "SKIPPED_AFTER_GROUP_FAILURE"

UNACKNOWLEDGED_OUTCOMES = frozenset({OUTCOME_FAILED, OUTCOME_SKIPPED_AFTER_GROUP_FAILURE})

_OUTCOME_COUNTERS = {
    OUTCOME_STATUS_CHANGED: "status_changed",
    OUTCOME_STATUS_UNCHANGED: "status_unchanged",
    OUTCOME_NOOP_TERMINAL: "noop_terminal",
    OUTCOME_NOOP_MISSING: "noop_missing",
    OUTCOME_NOOP_STALE: "status_unchanged",
    OUTCOME_REJECTED: "messages_rejected",
    OUTCOME_FAILED: "processing_failed",
    OUTCOME_SKIPPED_AFTER_GROUP_FAILURE: "processing_failed",
}


@dataclass(frozen=True)
class MessageOutcome:
    message_id: str
    run_id: str | None
    outcome: str
    previous_status: str | None = None
    observed_status: str | None = None
    current_status: str | None = None
    error_code: str | None = None

    @property
    def acknowledged(self) -> bool:
        return self.outcome not in UNACKNOWLEDGED_OUTCOMES


@dataclass(frozen=True)
class BatchResult:
    outcomes: tuple[MessageOutcome, ...]

    @property
    def failed_message_ids(self) -> list[str]:
        return [item.message_id for item in self.outcomes if not item.acknowledged]

    @property
    def acknowledged_message_ids(self) -> list[str]:
        return [item.message_id for item in self.outcomes if item.acknowledged]

    def batch_item_failures(self) -> dict[str, list[dict[str, str]]]:
        return {"batchItemFailures": [{"itemIdentifier": message_id} for message_id in self.failed_message_ids]}


class LaboratoryRunUpdateProcessor:
    def __init__(
        self,
        *,
        run_store: LaboratoryRunStore,
        laboratory_store: LaboratoryStore,
        execution_client: ExecutionServiceClient,
        notifier: LaboratoryRunEventPublisher | None = None,
        max_workers: int = 4,
        metrics: ReconciliationMetrics | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.run_store = run_store
        self.laboratory_store = laboratory_store
        self.execution_client = execution_client
        self.notifier = notifier
        self.max_workers = max_workers
        self.metrics = metrics
        self._clock = clock or _utc_now

    def process_batch(self, messages: Sequence[ChannelMessage]) -> BatchResult:
        outcomes: dict[str, MessageOutcome] = {}
        groups: dict[str, list[tuple[ChannelMessage, ProcessingEvent]]] = {}
        for message in messages:
            try:
                event = ProcessingEvent.from_body(
                    message.body,
                    grouping_key=message.group_key,
                    dedup_key=message.dedup_key,
                )
            except LaboratoryRunContractError as exc:
                logger.warning("LaboratoryRun update message rejected message_id=%s detail=%s", message.message_id, exc)
                outcomes[message.message_id] = self._record(
                    MessageOutcome(message_id=message.message_id, run_id=None, outcome=OUTCOME_REJECTED, error_code="CONTRACT_INVALID")
                )
                continue
            groups.setdefault(event.grouping_key, []).append((message, event))

        if groups:
            # Groups run in parallel; entries inside one group stay sequential.
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups))) as executor:
                for group_outcomes in executor.map(self._process_group, groups.values()):
                    for outcome in group_outcomes:
                        outcomes[outcome.message_id] = outcome

        result = BatchResult(outcomes=tuple(outcomes[message.message_id] for message in messages))
        logger.info(
            "LaboratoryRun update batch size=%s groups=%s acknowledged=%s failed=%s",
            len(messages),
            len(groups),
            len(result.acknowledged_message_ids),
            len(result.failed_message_ids),
        )
        return result

    def process_event(self, event: ProcessingEvent, *, message_id: str = "", redelivered: bool = False) -> MessageOutcome:
        try:
            outcome = self._reconcile(event, message_id, redelivered)
        except LaboratoryRunContractError as exc:
            # A stored record that no longer decodes will not decode on redelivery either.
            logger.warning(
                "LaboratoryRun update rejected run_id=%s message_id=%s stored record invalid detail=%s",
                event.record.run_id,
                message_id,
                exc,
            )
            outcome = MessageOutcome(
                message_id=message_id,
                run_id=event.record.run_id,
                outcome=OUTCOME_REJECTED,
                error_code="CONTRACT_INVALID",
            )
        except LaboratoryRunError as exc:
            logger.warning(
                "LaboratoryRun update failed run_id=%s message_id=%s code=%s detail=%s",
                event.record.run_id,
                message_id,
                exc.code,
                exc.detail,
            )
            outcome = MessageOutcome(
                message_id=message_id,
                run_id=event.record.run_id,
                outcome=OUTCOME_FAILED,
                error_code=exc.code,
            )
        except Exception as exc:
            logger.exception("LaboratoryRun update failed unexpectedly run_id=%s message_id=%s", event.record.run_id, message_id)
            outcome = MessageOutcome(
                message_id=message_id,
                run_id=event.record.run_id,
                outcome=OUTCOME_FAILED,
                error_code=reason_code(exc),
            )
        return self._record(outcome)

    def _process_group(self, entries: list[tuple[ChannelMessage, ProcessingEvent]]) -> list[MessageOutcome]:
        results: list[MessageOutcome] = []
        blocked_by: str | None = None
        for message, event in entries:
            if blocked_by is not None:
                # Later requests for this run must not overtake the failed one.
                results.append(
                    self._record(
                        MessageOutcome(
                            message_id=message.message_id,
                            run_id=event.record.run_id,
                            outcome=OUTCOME_SKIPPED_AFTER_GROUP_FAILURE,
                            error_code=blocked_by,
                        )
                    )
                )
                continue
            outcome = self.process_event(
                event,
                message_id=message.message_id,
                redelivered=message.receive_count > 1,
            )
            if not outcome.acknowledged:
                blocked_by = outcome.message_id
            results.append(outcome)
        return results

    def _reconcile(self, event: ProcessingEvent, message_id: str, redelivered: bool = False) -> MessageOutcome:
        run_id = event.record.run_id
        if event.operation is not Operation.UPDATE:
            logger.warning("LaboratoryRun event ignored run_id=%s operation=%s", run_id, event.operation.value)
            return MessageOutcome(message_id=message_id, run_id=run_id, outcome=OUTCOME_REJECTED, error_code="OPERATION_UNSUPPORTED")

        current = self.run_store.get_run(run_id, laboratory_id=event.record.laboratory_id)
        if current is None:
            logger.info("LaboratoryRun update no-op run_id=%s reason=missing", run_id)
            return MessageOutcome(message_id=message_id, run_id=run_id, outcome=OUTCOME_NOOP_MISSING)
        if redelivered and self.notifier is not None and current.status != event.record.status:
            # An earlier delivery may have committed this status and then failed to announce it.
            self._notify(current, republished=True)
        if is_terminal_status(current.status):
            logger.info("LaboratoryRun update no-op run_id=%s reason=terminal status=%s", run_id, current.status)
            return MessageOutcome(
                message_id=message_id,
                run_id=run_id,
                outcome=OUTCOME_NOOP_TERMINAL,
                previous_status=current.status,
                current_status=current.status,
            )

        try:
            foreign_status = self.execution_client.get_run_status(current, self._laboratory_for(current))
            observed = translate_foreign_status(str(current.platform or ""), foreign_status)
        except (ExecutionReferenceError, LaboratoryRunTaxonomyError) as exc:
            logger.warning("LaboratoryRun update rejected run_id=%s detail=%s", run_id, exc)
            return MessageOutcome(
                message_id=message_id,
                run_id=run_id,
                outcome=OUTCOME_REJECTED,
                previous_status=current.status,
                current_status=current.status,
                error_code=reason_code(exc) if isinstance(exc, LaboratoryRunError) else "PLATFORM_UNSUPPORTED",
            )

        checked_at = self._clock()
        try:
            if observed is not None and can_transition(current.status, observed):
                updated = self.run_store.update_run_status(
                    current,
                    new_status=observed,
                    checked_at=checked_at,
                    changed_at=checked_at,
                )
                self._notify(updated)
                logger.info(
                    "LaboratoryRun status changed run_id=%s from=%s to=%s foreign=%s",
                    run_id,
                    current.status,
                    updated.status,
                    foreign_status,
                )
                return MessageOutcome(
                    message_id=message_id,
                    run_id=run_id,
                    outcome=OUTCOME_STATUS_CHANGED,
                    previous_status=current.status,
                    observed_status=observed,
                    current_status=updated.status,
                )

            if observed is None:
                logger.info("LaboratoryRun foreign status unmapped run_id=%s foreign=%r", run_id, foreign_status)
            elif observed != current.status:
                logger.warning(
                    "LaboratoryRun status regression ignored run_id=%s stored=%s observed=%s",
                    run_id,
                    current.status,
                    observed,
                )
            self.run_store.touch_status_checked(current, checked_at=checked_at)
        except ConditionFailedError:
            return self._after_condition_failure(current, observed, checked_at, message_id)
        return MessageOutcome(
            message_id=message_id,
            run_id=run_id,
            outcome=OUTCOME_STATUS_UNCHANGED,
            previous_status=current.status,
            observed_status=observed,
            current_status=current.status,
        )

    def _after_condition_failure(
        self,
        expected: LaboratoryRun,
        observed: str | None,
        checked_at: str,
        message_id: str,
    ) -> MessageOutcome:
        latest = self.run_store.get_run(expected.run_id, laboratory_id=expected.laboratory_id)
        if latest is None:
            return MessageOutcome(message_id=message_id, run_id=expected.run_id, outcome=OUTCOME_NOOP_MISSING)
        if is_terminal_status(latest.status):
            outcome = OUTCOME_NOOP_TERMINAL
        elif latest.status_checked_at is not None and latest.status_checked_at > checked_at:
            outcome = OUTCOME_NOOP_STALE
        else:
            logger.warning(
                "LaboratoryRun conditional write lost run_id=%s expected=%s latest=%s",
                expected.run_id,
                expected.status,
                latest.status,
            )
            outcome = OUTCOME_FAILED
        return MessageOutcome(
            message_id=message_id,
            run_id=expected.run_id,
            outcome=outcome,
            previous_status=expected.status,
            observed_status=observed,
            current_status=latest.status,
            error_code=ConditionFailedError.code if outcome == OUTCOME_FAILED else None,
        )

    def _notify(self, run: LaboratoryRun, *, republished: bool = False) -> None:
        if self.notifier is None:
            return
        self.notifier.publish_run_update(run)
        if self.metrics is not None:
            self.metrics.incr("notifications_republished" if republished else "notifications_published")
        if republished:
            logger.info("LaboratoryRun change notification re-sent run_id=%s status=%s", run.run_id, run.status)

    def _laboratory_for(self, run: LaboratoryRun) -> Laboratory | None:
        if str(run.platform or "").strip() != PLATFORM_SEQERA:
            return None
        return self.laboratory_store.get_laboratory(run.laboratory_id)

    def _record(self, outcome: MessageOutcome) -> MessageOutcome:
        if self.metrics is not None:
            self.metrics.incr("messages_processed")
            self.metrics.incr(_OUTCOME_COUNTERS[outcome.outcome])
            if outcome.outcome != OUTCOME_STATUS_UNCHANGED:
                self.metrics.record_event(
                    outcome.outcome,
                    run_id=outcome.run_id,
                    message_id=outcome.message_id,
                    previous_status=outcome.previous_status,
                    current_status=outcome.current_status,
                )
        return outcome


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
