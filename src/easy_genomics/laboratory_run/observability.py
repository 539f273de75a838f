"""LaboratoryRun reconciliation counters and summary logging."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Any


logger = logging.getLogger("easy_genomics.laboratory_run.observability")

_REQUIRED_COUNTERS: tuple[str, ...] = (
    "runs_requested",
    "runs_selected",
    "runs_discarded",
    "publish_ok",
    "publish_failed",
    "messages_processed",
    "messages_rejected",
    "status_changed",
    "status_unchanged",
    "noop_terminal",
    "noop_missing",
    "processing_failed",
    "notifications_published",
    "notifications_republished",
)


class ReconciliationObservabilityError(ValueError):
    """Raised when an unknown counter is recorded."""


@dataclass
class ReconciliationMetrics:
    scope: str
    counters: dict[str, int] = field(default_factory=dict)
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    max_recent_events: int = 50

    def __post_init__(self) -> None:
        if self.max_recent_events <= 0:
            raise ReconciliationObservabilityError("max_recent_events must be > 0")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)
        self._lock = threading.Lock()

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in _REQUIRED_COUNTERS:
            raise ReconciliationObservabilityError(f"unknown counter: {name!r}")
        with self._lock:
            self.counters[name] += amount

    def record_event(self, kind: str, **details: Any) -> None:
        with self._lock:
            self.recent_events.append({"kind": kind, "at_utc": _utc_now(), **details})
            if len(self.recent_events) > self.max_recent_events:
                del self.recent_events[: len(self.recent_events) - self.max_recent_events]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "scope": self.scope,
                "generated_at_utc": _utc_now(),
                "counters": dict(sorted(self.counters.items())),
                "recent_events": list(self.recent_events),
            }

    def log_summary(self) -> None:
        with self._lock:
            nonzero = {key: value for key, value in sorted(self.counters.items()) if value}
        logger.info(
            "LaboratoryRun reconciliation summary scope=%s %s",
            self.scope,
            " ".join(f"{key}={value}" for key, value in nonzero.items()) or "idle",
        )


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
