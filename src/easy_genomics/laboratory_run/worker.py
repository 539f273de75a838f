"""LaboratoryRun status reconciliation CLI: trigger checks and run a polling worker."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import time
from typing import Any, Protocol, Sequence

from easy_genomics.event_bus import ChannelMessage, SqsFifoConsumer
from easy_genomics.logging_utils import configure_logging

from .authorization import CallerIdentity
from .config import RunStatusConfigError, RunStatusProfile
from .errors import LaboratoryRunError
from .handlers import build_local_channel, build_profile_client, build_trigger_service, build_update_processor
from .observability import ReconciliationMetrics
from .processor import LaboratoryRunUpdateProcessor


logger = logging.getLogger("easy_genomics.laboratory_run.worker")


class MessageConsumer(Protocol):
    def receive(
        self,
        *,
        max_messages: int,
        wait_seconds: int = 20,
        visibility_timeout: int | None = None,
    ) -> list[ChannelMessage]:
        ...

    def ack(self, messages: list[ChannelMessage]) -> list[str]:
        ...


class LaboratoryRunUpdateWorker:
    """Pulls bounded batches, processes them, deletes only acknowledged messages.

    Unacknowledged messages stay invisible until the queue's visibility timeout
    expires, which is the redelivery backoff.
    """

    def __init__(
        self,
        *,
        consumer: MessageConsumer,
        processor: LaboratoryRunUpdateProcessor,
        batch_size: int = 5,
        wait_seconds: int = 20,
        visibility_timeout: int | None = None,
        poll_sleep_seconds: float = 1.0,
        metrics: ReconciliationMetrics | None = None,
    ) -> None:
        self.consumer = consumer
        self.processor = processor
        self.batch_size = batch_size
        self.wait_seconds = wait_seconds
        self.visibility_timeout = visibility_timeout
        self.poll_sleep_seconds = poll_sleep_seconds
        self.metrics = metrics

    def run_once(self) -> int:
        messages = self.consumer.receive(
            max_messages=self.batch_size,
            wait_seconds=self.wait_seconds,
            visibility_timeout=self.visibility_timeout,
        )
        if not messages:
            return 0
        result = self.processor.process_batch(messages)
        acknowledged = set(result.acknowledged_message_ids)
        to_delete = [message for message in messages if message.message_id in acknowledged]
        undeleted = self.consumer.ack(to_delete) if to_delete else []
        if undeleted:
            logger.warning("LaboratoryRun worker delete failed message_ids=%s", undeleted)
        if self.metrics is not None:
            self.metrics.log_summary()
        return len(to_delete) - len(undeleted)

    def run_forever(self) -> None:
        while True:
            processed = self.run_once()
            if processed == 0:
                time.sleep(self.poll_sleep_seconds)


def _load_profile(path: str | None) -> RunStatusProfile:
    if path:
        return RunStatusProfile.load(Path(path))
    return RunStatusProfile.from_env()


def _load_claims(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RunStatusConfigError("claims file must contain a JSON object")
    return payload


def _cmd_trigger(args: argparse.Namespace, profile: RunStatusProfile) -> int:
    service = build_trigger_service(profile)
    caller = CallerIdentity.from_claims(_load_claims(args.claims))
    try:
        result = service.request_status_check(caller, args.laboratory_id, {"runIds": list(args.run_id)})
    except LaboratoryRunError as exc:
        print(json.dumps({"Error": exc.public_message, "ErrorCode": exc.code}))
        return 1
    print(
        json.dumps(
            {
                **result.response_body(),
                "Selected": result.filter_result.selected_ids(),
                "Discarded": result.filter_result.discarded_by_reason(),
                "Failed": [outcome.run_id for outcome in result.failed],
            },
            sort_keys=True,
        )
    )
    return 0


def _cmd_worker(args: argparse.Namespace, profile: RunStatusProfile) -> int:
    if not profile.run_update_queue_url:
        raise RunStatusConfigError("run_update_queue_url is required for the worker")
    metrics = ReconciliationMetrics(scope=f"worker:{profile.profile_id}")
    worker = LaboratoryRunUpdateWorker(
        consumer=SqsFifoConsumer(build_profile_client("sqs", profile), queue_url=profile.run_update_queue_url),
        processor=build_update_processor(profile, metrics=metrics),
        batch_size=profile.batch_size,
        wait_seconds=profile.receive_wait_seconds,
        visibility_timeout=profile.visibility_timeout_seconds,
        poll_sleep_seconds=profile.poll_sleep_seconds,
        metrics=metrics,
    )
    if args.once:
        processed = worker.run_once()
        logger.info("LaboratoryRun worker processed=%s", processed)
        return 0
    worker.run_forever()
    return 0


def _cmd_local(args: argparse.Namespace, profile: RunStatusProfile) -> int:
    update_topic = profile.require_topic("update")
    notify_topic = profile.run_notification_topic_arn
    if notify_topic == update_topic:
        raise RunStatusConfigError("notification topic must differ from the update topic")
    channel = build_local_channel(profile)
    metrics = ReconciliationMetrics(scope=f"local:{profile.profile_id}")
    service = build_trigger_service(profile, channel=channel, metrics=metrics)
    caller = CallerIdentity.from_claims(_load_claims(args.claims))
    try:
        requested = service.request_status_check(caller, args.laboratory_id, {"runIds": list(args.run_id)})
    except LaboratoryRunError as exc:
        print(json.dumps({"Error": exc.public_message, "ErrorCode": exc.code}))
        return 1
    worker = LaboratoryRunUpdateWorker(
        consumer=channel.subscription(update_topic),
        processor=build_update_processor(profile, channel=channel, metrics=metrics),
        batch_size=profile.batch_size,
        wait_seconds=0,
        visibility_timeout=profile.visibility_timeout_seconds,
        metrics=metrics,
    )
    reconciled = 0
    # Stops at the first batch with nothing acknowledged; those messages stay pending.
    while True:
        processed = worker.run_once()
        if processed == 0:
            break
        reconciled += processed
    print(
        json.dumps(
            {
                **requested.response_body(),
                "Reconciled": reconciled,
                "Pending": channel.pending(update_topic),
                "Notifications": channel.bodies(notify_topic) if notify_topic else [],
            },
            sort_keys=True,
        )
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="LaboratoryRun status reconciliation")
    parser.add_argument("--profile", help="Path to run-status profile YAML (defaults to environment)")
    sub = parser.add_subparsers(dest="command", required=True)

    trigger = sub.add_parser("trigger", help="Request status checks for runs of one laboratory")
    trigger.add_argument("--laboratory-id", required=True)
    trigger.add_argument("--run-id", action="append", required=True, help="Repeat for each run")
    trigger.add_argument("--claims", help="Path to a JSON file of caller Cognito claims")

    worker = sub.add_parser("worker", help="Poll the run update queue and reconcile statuses")
    worker.add_argument("--once", action="store_true", help="Run one batch and exit")

    local = sub.add_parser("local", help="Request checks and reconcile them in-process without SNS/SQS")
    local.add_argument("--laboratory-id", required=True)
    local.add_argument("--run-id", action="append", required=True, help="Repeat for each run")
    local.add_argument("--claims", help="Path to a JSON file of caller Cognito claims")

    args = parser.parse_args(argv)
    profile = _load_profile(args.profile)
    configure_logging(profile.log_level)
    if args.command == "trigger":
        return _cmd_trigger(args, profile)
    if args.command == "local":
        return _cmd_local(args, profile)
    return _cmd_worker(args, profile)


if __name__ == "__main__":
    raise SystemExit(main())
