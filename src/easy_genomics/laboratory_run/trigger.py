"""Status-check trigger: filter in-flight runs and fan out reconciliation requests."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import json
import logging
from typing import Any, Iterable

from .authorization import AuthorizationGate, CallerIdentity, has_laboratory_run_access
from .contracts import LaboratoryRun
from .errors import (
    InvalidRequestError,
    LaboratoryNotFoundError,
    LaboratoryRunError,
    UnauthorizedAccessError,
    reason_code,
)
from .observability import ReconciliationMetrics
from .publish import LaboratoryRunEventPublisher
from .storage import LaboratoryRunStore, LaboratoryStore
from .taxonomy import is_terminal_status


logger = logging.getLogger("easy_genomics.laboratory_run.trigger")

DISCARD_NOT_FOUND = "NOT_FOUND"
DISCARD_LABORATORY_MISMATCH = "LABORATORY_MISMATCH"
DISCARD_TERMINAL_STATUS = "TERMINAL_STATUS"
DISCARD_DUPLICATE_IN_REQUEST = "DUPLICATE_IN_REQUEST"
DISCARD_LOOKUP_FAILED = "LOOKUP_FAILED"

REQUESTED_STATUS = "Requested"


@dataclass(frozen=True)
class DiscardedRun:
    run_id: str
    reason: str


@dataclass(frozen=True)
class RunFilterResult:
    selected: tuple[LaboratoryRun, ...]
    discarded: tuple[DiscardedRun, ...]

    def selected_ids(self) -> list[str]:
        return [run.run_id for run in self.selected]

    def discarded_by_reason(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for item in self.discarded:
            grouped.setdefault(item.reason, []).append(item.run_id)
        return grouped


@dataclass(frozen=True)
class PublishOutcome:
    run_id: str
    published: bool
    message_id: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class TriggerResult:
    laboratory_id: str
    filter_result: RunFilterResult
    outcomes: tuple[PublishOutcome, ...]

    @property
    def count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.published)

    @property
    def failed(self) -> tuple[PublishOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if not outcome.published)

    def response_body(self) -> dict[str, Any]:
        return {"Status": REQUESTED_STATUS, "Count": self.count}


def parse_run_ids(body: Any) -> list[str]:
    """Extract ``runIds`` from a request body (JSON text or mapping)."""
    payload = body
    if isinstance(body, (str, bytes)):
        if not body:
            raise InvalidRequestError("No runIds provided")
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise InvalidRequestError("Request body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("No runIds provided")
    run_ids = payload.get("runIds")
    if not isinstance(run_ids, list) or not run_ids:
        raise InvalidRequestError("No runIds provided")
    if any(not isinstance(item, str) for item in run_ids):
        raise InvalidRequestError("runIds must be a list of strings")
    return [item.strip() for item in run_ids]


class LaboratoryRunStatusTriggerService:
    def __init__(
        self,
        *,
        run_store: LaboratoryRunStore,
        laboratory_store: LaboratoryStore,
        authorization_gate: AuthorizationGate,
        publisher: LaboratoryRunEventPublisher,
        max_workers: int = 8,
        metrics: ReconciliationMetrics | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.run_store = run_store
        self.laboratory_store = laboratory_store
        self.authorization_gate = authorization_gate
        self.publisher = publisher
        self.max_workers = max_workers
        self.metrics = metrics

    def request_status_check(self, caller: CallerIdentity, laboratory_id: str | None, body: Any) -> TriggerResult:
        normalized_lab = str(laboratory_id or "").strip()
        if not normalized_lab:
            raise InvalidRequestError("Missing laboratoryId")
        laboratory = self.laboratory_store.get_laboratory(normalized_lab)
        if laboratory is None:
            raise LaboratoryNotFoundError(f"laboratory_id={normalized_lab}")
        if not has_laboratory_run_access(
            self.authorization_gate,
            caller,
            laboratory.organization_id,
            laboratory.laboratory_id,
        ):
            raise UnauthorizedAccessError()
        run_ids = parse_run_ids(body)

        filtered = self.filter_runs(normalized_lab, run_ids)
        outcomes = self.publish_runs(filtered.selected)
        result = TriggerResult(laboratory_id=normalized_lab, filter_result=filtered, outcomes=outcomes)
        logger.info(
            "LaboratoryRun status check requested laboratory_id=%s user_id=%s requested=%s selected=%s discarded=%s published=%s failed=%s",
            normalized_lab,
            caller.user_id,
            len(run_ids),
            len(filtered.selected),
            len(filtered.discarded),
            result.count,
            len(result.failed),
        )
        if self.metrics is not None:
            self.metrics.incr("runs_requested", len(run_ids))
            self.metrics.incr("runs_selected", len(filtered.selected))
            self.metrics.incr("runs_discarded", len(filtered.discarded))
            self.metrics.incr("publish_ok", result.count)
            self.metrics.incr("publish_failed", len(result.failed))
        return result

    def filter_runs(self, laboratory_id: str, run_ids: Iterable[str]) -> RunFilterResult:
        selected: list[LaboratoryRun] = []
        discarded: list[DiscardedRun] = []
        seen: set[str] = set()
        for run_id in run_ids:
            if run_id in seen:
                discarded.append(DiscardedRun(run_id=run_id, reason=DISCARD_DUPLICATE_IN_REQUEST))
                continue
            seen.add(run_id)
            try:
                run = self.run_store.get_run(run_id)
            except (LaboratoryRunError, ValueError) as exc:
                logger.warning("LaboratoryRun lookup failed run_id=%s code=%s", run_id, reason_code(exc))
                discarded.append(DiscardedRun(run_id=run_id, reason=DISCARD_LOOKUP_FAILED))
                continue
            if run is None:
                discarded.append(DiscardedRun(run_id=run_id, reason=DISCARD_NOT_FOUND))
            elif run.laboratory_id != laboratory_id:
                discarded.append(DiscardedRun(run_id=run_id, reason=DISCARD_LABORATORY_MISMATCH))
            elif is_terminal_status(run.status):
                discarded.append(DiscardedRun(run_id=run_id, reason=DISCARD_TERMINAL_STATUS))
            else:
                selected.append(run)
        result = RunFilterResult(selected=tuple(selected), discarded=tuple(discarded))
        if discarded:
            logger.debug("LaboratoryRun status check discarded=%s", result.discarded_by_reason())
        return result

    def publish_runs(self, runs: Iterable[LaboratoryRun]) -> tuple[PublishOutcome, ...]:
        pending = list(runs)
        if not pending:
            return ()
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending))) as executor:
            futures = [executor.submit(self._publish_one, run) for run in pending]
            return tuple(future.result() for future in futures)

    def _publish_one(self, run: LaboratoryRun) -> PublishOutcome:
        try:
            ref = self.publisher.publish_run_update(run)
        except LaboratoryRunError as exc:
            logger.warning("LaboratoryRun publish failed run_id=%s code=%s detail=%s", run.run_id, exc.code, exc.detail)
            return PublishOutcome(run_id=run.run_id, published=False, error_code=exc.code)
        except Exception as exc:
            logger.exception("LaboratoryRun publish failed unexpectedly run_id=%s", run.run_id)
            return PublishOutcome(run_id=run.run_id, published=False, error_code=reason_code(exc))
        return PublishOutcome(run_id=run.run_id, published=True, message_id=ref.message_id)
