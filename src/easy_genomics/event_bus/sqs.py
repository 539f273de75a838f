"""SQS FIFO consumer adapter (polling worker + Lambda event source records)."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from botocore.exceptions import BotoCoreError, ClientError

from easy_genomics.utils.aws_clients import error_code, error_detail

from .publisher import ChannelMessage


logger = logging.getLogger("easy_genomics.event_bus")

_MAX_RECEIVE = 10


class SqsFifoConsumer:
    def __init__(self, client: Any, *, queue_url: str) -> None:
        if not queue_url:
            raise RuntimeError("SQS_QUEUE_URL_MISSING")
        self._client = client
        self.queue_url = queue_url

    def receive(
        self,
        *,
        max_messages: int,
        wait_seconds: int = 20,
        visibility_timeout: int | None = None,
    ) -> list[ChannelMessage]:
        args: dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MaxNumberOfMessages": max(1, min(_MAX_RECEIVE, int(max_messages))),
            "WaitTimeSeconds": max(0, int(wait_seconds)),
            "AttributeNames": ["All"],
        }
        if visibility_timeout is not None:
            args["VisibilityTimeout"] = int(visibility_timeout)
        try:
            response = self._client.receive_message(**args)
        except (BotoCoreError, ClientError) as exc:
            logger.warning(
                "SQS receive failed queue=%s code=%s detail=%s",
                self.queue_url,
                error_code(exc),
                error_detail(exc),
            )
            return []
        return [_from_receive(item) for item in response.get("Messages", [])]

    def ack(self, messages: Iterable[ChannelMessage]) -> list[str]:
        """Delete messages; returns the message ids SQS refused to delete."""
        pending = list(messages)
        failed: list[str] = []
        for start in range(0, len(pending), _MAX_RECEIVE):
            chunk = pending[start : start + _MAX_RECEIVE]
            entries = [
                {"Id": str(index), "ReceiptHandle": message.receipt_handle}
                for index, message in enumerate(chunk)
            ]
            try:
                response = self._client.delete_message_batch(QueueUrl=self.queue_url, Entries=entries)
            except (BotoCoreError, ClientError) as exc:
                logger.warning(
                    "SQS delete batch failed queue=%s code=%s detail=%s",
                    self.queue_url,
                    error_code(exc),
                    error_detail(exc),
                )
                failed.extend(message.message_id for message in chunk)
                continue
            for item in response.get("Failed", []):
                failed.append(chunk[int(item["Id"])].message_id)
        return failed


def messages_from_lambda_event(event: Mapping[str, Any]) -> list[ChannelMessage]:
    records = event.get("Records") if isinstance(event, Mapping) else None
    if not isinstance(records, list):
        return []
    messages: list[ChannelMessage] = []
    for record in records:
        if not isinstance(record, Mapping):
            continue
        attributes = record.get("attributes") if isinstance(record.get("attributes"), Mapping) else {}
        messages.append(
            ChannelMessage(
                message_id=str(record.get("messageId") or ""),
                receipt_handle=str(record.get("receiptHandle") or ""),
                body=str(record.get("body") or ""),
                group_key=attributes.get("MessageGroupId"),
                dedup_key=attributes.get("MessageDeduplicationId"),
                receive_count=_as_int(attributes.get("ApproximateReceiveCount"), 1),
                attributes=dict(attributes),
            )
        )
    return messages


def _from_receive(item: Mapping[str, Any]) -> ChannelMessage:
    attributes = item.get("Attributes") if isinstance(item.get("Attributes"), Mapping) else {}
    return ChannelMessage(
        message_id=str(item.get("MessageId") or ""),
        receipt_handle=str(item.get("ReceiptHandle") or ""),
        body=str(item.get("Body") or ""),
        group_key=attributes.get("MessageGroupId"),
        dedup_key=attributes.get("MessageDeduplicationId"),
        receive_count=_as_int(attributes.get("ApproximateReceiveCount"), 1),
        attributes=dict(attributes),
    )


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
