"""Grouped channel publisher interface and message types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ChannelRef:
    topic: str
    message_id: str
    group_key: str
    dedup_key: str
    sequence_number: str | None = None
    published_at_utc: str | None = None
    duplicate: bool = False


@dataclass(frozen=True)
class ChannelMessage:
    message_id: str
    receipt_handle: str
    body: str
    group_key: str | None = None
    dedup_key: str | None = None
    receive_count: int = 1
    attributes: dict[str, Any] = field(default_factory=dict)


class GroupedPublisher(Protocol):
    def publish(self, topic: str, group_key: str, dedup_key: str, payload: dict[str, Any]) -> ChannelRef:
        ...
