"""SNS FIFO publish-only channel adapter."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from easy_genomics.utils.aws_clients import error_code, error_detail

from .publisher import ChannelRef


logger = logging.getLogger("easy_genomics.event_bus")


class ChannelPublishError(RuntimeError):
    """Raised when a message cannot be handed to the channel."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        super().__init__(f"{code}:{detail}" if detail else code)


class SnsFifoPublisher:
    def __init__(self, client: Any) -> None:
        self._client = client

    def publish(self, topic: str, group_key: str, dedup_key: str, payload: dict[str, Any]) -> ChannelRef:
        if not topic:
            raise ChannelPublishError("SNS_TOPIC_ARN_MISSING")
        if not group_key or not dedup_key:
            raise ChannelPublishError("SNS_FIFO_KEYS_MISSING", f"group_key={group_key!r}")
        message = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        try:
            response = self._client.publish(
                TopicArn=topic,
                Message=message,
                MessageGroupId=group_key,
                MessageDeduplicationId=dedup_key,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning(
                "SNS publish failed topic=%s group=%s code=%s detail=%s",
                topic,
                group_key,
                error_code(exc),
                error_detail(exc),
            )
            raise ChannelPublishError(f"SNS_PUBLISH_FAILED:{error_code(exc)}", error_detail(exc)) from exc
        message_id = str(response.get("MessageId") or "")
        logger.info(
            "SNS publish topic=%s group=%s message_id=%s seq=%s bytes=%s",
            topic,
            group_key,
            message_id,
            response.get("SequenceNumber", ""),
            len(message),
        )
        return ChannelRef(
            topic=topic,
            message_id=message_id,
            group_key=group_key,
            dedup_key=dedup_key,
            sequence_number=response.get("SequenceNumber"),
            published_at_utc=datetime.now(tz=timezone.utc).isoformat(),
        )
