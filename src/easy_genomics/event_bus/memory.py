"""In-process FIFO channel with message groups and a deduplication window.

Models one SNS FIFO -> SQS FIFO pair per topic for local runs and tests:

- each topic has its own queue, dedup namespace and group locks;
- messages sharing a group key are delivered in publish order, and a group
  with any message in flight is not delivered again until it is acked or
  released;
- a dedup key seen within ``dedup_window_seconds`` is accepted but not
  enqueued a second time;
- unacknowledged messages become visible again once
  ``visibility_timeout_seconds`` elapses, or immediately via ``release``.

Calls that take an optional ``topic`` may omit it while the channel carries a
single topic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import threading
import time
from typing import Any, Callable
import uuid

from .publisher import ChannelMessage, ChannelRef


@dataclass
class _Entry:
    message_id: str
    sequence_number: int
    topic: str
    group_key: str
    dedup_key: str
    body: str
    receive_count: int = 0
    receipt_handle: str | None = None
    invisible_until: float | None = None


@dataclass
class _TopicQueue:
    entries: list[_Entry] = field(default_factory=list)
    dedup: dict[str, tuple[float, _Entry]] = field(default_factory=dict)
    locked_groups: dict[str, int] = field(default_factory=dict)


class InMemoryFifoChannel:
    def __init__(
        self,
        *,
        dedup_window_seconds: float = 300.0,
        visibility_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dedup_window_seconds = dedup_window_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._topics: dict[str, _TopicQueue] = {}
        self._sequence = 0
        self.published: list[ChannelRef] = []

    def publish(self, topic: str, group_key: str, dedup_key: str, payload: dict[str, Any]) -> ChannelRef:
        if not topic:
            raise ValueError("topic is required")
        if not group_key or not dedup_key:
            raise ValueError("group_key and dedup_key are required")
        body = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        now = self._clock()
        with self._lock:
            queue = self._topics.setdefault(topic, _TopicQueue())
            self._expire_dedup(queue, now)
            seen = queue.dedup.get(dedup_key)
            if seen is not None:
                return self._ref(seen[1], duplicate=True)
            self._sequence += 1
            entry = _Entry(
                message_id=str(uuid.uuid4()),
                sequence_number=self._sequence,
                topic=topic,
                group_key=group_key,
                dedup_key=dedup_key,
                body=body,
            )
            queue.entries.append(entry)
            queue.dedup[dedup_key] = (now, entry)
            ref = self._ref(entry, duplicate=False)
            self.published.append(ref)
            return ref

    def receive(
        self,
        *,
        topic: str | None = None,
        max_messages: int = 10,
        wait_seconds: int = 0,
        visibility_timeout: float | None = None,
    ) -> list[ChannelMessage]:
        delivered: list[ChannelMessage] = []
        now = self._clock()
        timeout = self.visibility_timeout_seconds if visibility_timeout is None else visibility_timeout
        with self._lock:
            queue = self._queue_for(topic)
            if queue is None:
                return delivered
            self._expire_in_flight(queue, now)
            blocked = set(queue.locked_groups)
            for entry in queue.entries:
                if len(delivered) >= max_messages:
                    break
                if entry.receipt_handle is not None or entry.group_key in blocked:
                    continue
                entry.receive_count += 1
                entry.receipt_handle = str(uuid.uuid4())
                entry.invisible_until = now + timeout
                delivered.append(
                    ChannelMessage(
                        message_id=entry.message_id,
                        receipt_handle=entry.receipt_handle,
                        body=entry.body,
                        group_key=entry.group_key,
                        dedup_key=entry.dedup_key,
                        receive_count=entry.receive_count,
                    )
                )
            for message in delivered:
                queue.locked_groups[message.group_key] = queue.locked_groups.get(message.group_key, 0) + 1
        return delivered

    def ack(self, messages: list[ChannelMessage]) -> list[str]:
        failed: list[str] = []
        with self._lock:
            for message in messages:
                found = self._find_in_flight(message.receipt_handle)
                if found is None:
                    failed.append(message.message_id)
                    continue
                queue, entry = found
                queue.entries.remove(entry)
                _unlock(queue, entry.group_key)
        return failed

    def release(self, messages: list[ChannelMessage]) -> None:
        with self._lock:
            for message in messages:
                found = self._find_in_flight(message.receipt_handle)
                if found is None:
                    continue
                queue, entry = found
                entry.receipt_handle = None
                entry.invisible_until = None
                _unlock(queue, entry.group_key)

    def pending(self, topic: str | None = None) -> int:
        with self._lock:
            queue = self._queue_for(topic)
            return len(queue.entries) if queue is not None else 0

    def bodies(self, topic: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            queue = self._queue_for(topic)
            return [json.loads(entry.body) for entry in queue.entries] if queue is not None else []

    def subscription(self, topic: str) -> "FifoSubscription":
        return FifoSubscription(self, topic)

    def _queue_for(self, topic: str | None) -> _TopicQueue | None:
        if topic is not None:
            return self._topics.get(topic)
        if len(self._topics) > 1:
            raise ValueError(f"topic is required; channel carries {sorted(self._topics)}")
        return next(iter(self._topics.values()), None)

    def _find_in_flight(self, receipt_handle: str) -> tuple[_TopicQueue, _Entry] | None:
        for queue in self._topics.values():
            for entry in queue.entries:
                if entry.receipt_handle is not None and entry.receipt_handle == receipt_handle:
                    return queue, entry
        return None

    def _expire_in_flight(self, queue: _TopicQueue, now: float) -> None:
        for entry in queue.entries:
            if entry.receipt_handle is not None and entry.invisible_until is not None and now >= entry.invisible_until:
                entry.receipt_handle = None
                entry.invisible_until = None
                _unlock(queue, entry.group_key)

    def _expire_dedup(self, queue: _TopicQueue, now: float) -> None:
        expired = [key for key, (seen_at, _) in queue.dedup.items() if now - seen_at >= self.dedup_window_seconds]
        for key in expired:
            queue.dedup.pop(key, None)

    def _ref(self, entry: _Entry, *, duplicate: bool) -> ChannelRef:
        return ChannelRef(
            topic=entry.topic,
            message_id=entry.message_id,
            group_key=entry.group_key,
            dedup_key=entry.dedup_key,
            sequence_number=str(entry.sequence_number),
            published_at_utc=datetime.now(tz=timezone.utc).isoformat(),
            duplicate=duplicate,
        )


class FifoSubscription:
    """Consumer view of one topic's queue, shaped like ``SqsFifoConsumer``."""

    def __init__(self, channel: InMemoryFifoChannel, topic: str) -> None:
        self.channel = channel
        self.topic = topic

    def receive(
        self,
        *,
        max_messages: int = 10,
        wait_seconds: int = 0,
        visibility_timeout: float | None = None,
    ) -> list[ChannelMessage]:
        return self.channel.receive(
            topic=self.topic,
            max_messages=max_messages,
            wait_seconds=wait_seconds,
            visibility_timeout=visibility_timeout,
        )

    def ack(self, messages: list[ChannelMessage]) -> list[str]:
        return self.channel.ack(messages)

    def release(self, messages: list[ChannelMessage]) -> None:
        self.channel.release(messages)

    def pending(self) -> int:
        return self.channel.pending(self.topic)


def _unlock(queue: _TopicQueue, group_key: str) -> None:
    remaining = queue.locked_groups.get(group_key, 0) - 1
    if remaining <= 0:
        queue.locked_groups.pop(group_key, None)
    else:
        queue.locked_groups[group_key] = remaining
