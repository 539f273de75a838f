"""LaboratoryRun processing-event publisher over a grouped channel."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable
import uuid

from easy_genomics.event_bus import ChannelPublishError, ChannelRef, GroupedPublisher

from .contracts import LaboratoryRun, ProcessingEvent
from .errors import PublishError


logger = logging.getLogger("easy_genomics.laboratory_run.publish")


def new_dedup_key() -> str:
    return str(uuid.uuid4())


@dataclass
class LaboratoryRunEventPublisher:
    """Publishes UPDATE events for one topic, grouped by RunId.

    Every publish mints a fresh deduplication key, so the channel suppresses
    only transport-level repeats of the same attempt; consumers must stay
    idempotent across independent publishes for the same run.
    """

    channel: GroupedPublisher
    topic: str
    dedup_key_factory: Callable[[], str] = new_dedup_key

    def publish_run_update(self, run: LaboratoryRun) -> ChannelRef:
        event = ProcessingEvent.for_run_update(run, dedup_key=self.dedup_key_factory())
        try:
            ref = self.channel.publish(self.topic, event.grouping_key, event.dedup_key or "", event.body())
        except ChannelPublishError as exc:
            raise PublishError(f"run_id={run.run_id}:{exc.code}") from exc
        if ref.duplicate:
            logger.info(
                "LaboratoryRun publish deduplicated topic=%s run_id=%s dedup_key=%s",
                self.topic,
                run.run_id,
                event.dedup_key,
            )
        return ref
