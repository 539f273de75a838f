"""Lambda entrypoints and service wiring for LaboratoryRun status reconciliation."""

from __future__ import annotations

import base64
import binascii
from functools import lru_cache
import logging
from typing import Any, Mapping

from easy_genomics.event_bus import (
    GroupedPublisher,
    InMemoryFifoChannel,
    SnsFifoPublisher,
    messages_from_lambda_event,
)
from easy_genomics.logging_utils import configure_logging
from easy_genomics.utils.aws_clients import build_client
from easy_genomics.utils.param_store import SsmParameterReader

from .authorization import AuthorizationGate, CallerIdentity, ClaimsAuthorizationGate
from .config import RunStatusProfile
from .errors import InvalidRequestError, build_error_response, build_response
from .execution import OmicsExecutionClient, SeqeraExecutionClient, build_execution_router
from .observability import ReconciliationMetrics
from .processor import LaboratoryRunUpdateProcessor
from .publish import LaboratoryRunEventPublisher
from .storage import (
    DynamoDbLaboratoryRunStore,
    DynamoDbLaboratoryStore,
    LaboratoryRunStore,
    LaboratoryStore,
    SqliteLaboratoryRunStore,
)
from .trigger import LaboratoryRunStatusTriggerService


logger = logging.getLogger("easy_genomics.laboratory_run.handlers")


class StatusCheckHandler:
    """API Gateway handler for ``request-laboratory-run-status-check``."""

    def __init__(self, service: LaboratoryRunStatusTriggerService) -> None:
        self.service = service

    def __call__(self, event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
        try:
            caller = CallerIdentity.from_api_gateway_event(event)
            query = event.get("queryStringParameters") or {}
            laboratory_id = query.get("laboratoryId") if isinstance(query, Mapping) else None
            result = self.service.request_status_check(caller, laboratory_id, _request_body(event))
            return build_response(200, result.response_body())
        except Exception as exc:
            return build_error_response(exc)


class RunUpdateHandler:
    """SQS event-source handler; reports unprocessed messages as batch item failures."""

    def __init__(self, processor: LaboratoryRunUpdateProcessor, metrics: ReconciliationMetrics | None = None) -> None:
        self.processor = processor
        self.metrics = metrics

    def __call__(self, event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
        messages = messages_from_lambda_event(event)
        result = self.processor.process_batch(messages)
        if self.metrics is not None:
            self.metrics.log_summary()
        return result.batch_item_failures()


def build_stores(profile: RunStatusProfile) -> tuple[LaboratoryRunStore, LaboratoryStore]:
    if profile.store_dsn:
        store = SqliteLaboratoryRunStore(locator=profile.store_dsn)
        return store, store
    client = build_profile_client("dynamodb", profile)
    return (
        DynamoDbLaboratoryRunStore(client, table_name=profile.laboratory_run_table, run_id_index=profile.run_id_index),
        DynamoDbLaboratoryStore(
            client,
            table_name=profile.laboratory_table,
            laboratory_id_index=profile.laboratory_id_index,
        ),
    )


def build_trigger_service(
    profile: RunStatusProfile,
    *,
    channel: GroupedPublisher | None = None,
    authorization_gate: AuthorizationGate | None = None,
    stores: tuple[LaboratoryRunStore, LaboratoryStore] | None = None,
    metrics: ReconciliationMetrics | None = None,
) -> LaboratoryRunStatusTriggerService:
    run_store, laboratory_store = stores or build_stores(profile)
    return LaboratoryRunStatusTriggerService(
        run_store=run_store,
        laboratory_store=laboratory_store,
        authorization_gate=authorization_gate or ClaimsAuthorizationGate(),
        publisher=LaboratoryRunEventPublisher(
            channel=channel or SnsFifoPublisher(build_profile_client("sns", profile)),
            topic=profile.require_topic("update"),
        ),
        max_workers=profile.publish_max_workers,
        metrics=metrics,
    )


def build_update_processor(
    profile: RunStatusProfile,
    *,
    channel: GroupedPublisher | None = None,
    stores: tuple[LaboratoryRunStore, LaboratoryStore] | None = None,
    metrics: ReconciliationMetrics | None = None,
) -> LaboratoryRunUpdateProcessor:
    run_store, laboratory_store = stores or build_stores(profile)
    notifier = None
    if profile.run_notification_topic_arn:
        notifier = LaboratoryRunEventPublisher(
            channel=channel or SnsFifoPublisher(build_profile_client("sns", profile)),
            topic=profile.run_notification_topic_arn,
        )
    else:
        logger.warning("LaboratoryRun change notifications disabled: notification topic not configured")
    seqera = SeqeraExecutionClient(
        parameter_reader=SsmParameterReader(build_profile_client("ssm", profile)),
        api_base_url=profile.seqera_api_base_url,
        token_parameter_template=profile.token_parameter_template,
        timeout_seconds=profile.request_timeout_seconds,
    )
    omics = OmicsExecutionClient(build_profile_client("omics", profile))
    return LaboratoryRunUpdateProcessor(
        run_store=run_store,
        laboratory_store=laboratory_store,
        execution_client=build_execution_router(seqera=seqera, omics=omics),
        notifier=notifier,
        max_workers=profile.processor_max_workers,
        metrics=metrics,
    )


def build_local_channel(profile: RunStatusProfile) -> InMemoryFifoChannel:
    """In-process stand-in for the SNS/SQS FIFO pair, used by the local CLI mode."""
    return InMemoryFifoChannel(
        dedup_window_seconds=profile.dedup_window_seconds,
        visibility_timeout_seconds=profile.visibility_timeout_seconds,
    )


@lru_cache(maxsize=1)
def _lambda_profile() -> RunStatusProfile:
    profile = RunStatusProfile.from_env()
    configure_logging(profile.log_level)
    return profile


@lru_cache(maxsize=1)
def _status_check_handler() -> StatusCheckHandler:
    profile = _lambda_profile()
    return StatusCheckHandler(build_trigger_service(profile))


@lru_cache(maxsize=1)
def _run_update_handler() -> RunUpdateHandler:
    profile = _lambda_profile()
    metrics = ReconciliationMetrics(scope="process-update-laboratory-run")
    return RunUpdateHandler(build_update_processor(profile, metrics=metrics), metrics=metrics)


def request_laboratory_run_status_check(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    return _status_check_handler()(event, context)


def process_update_laboratory_run(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    return _run_update_handler()(event, context)


def _request_body(event: Mapping[str, Any]) -> Any:
    raw = event.get("body")
    if isinstance(raw, str) and bool(event.get("isBase64Encoded")):
        try:
            return base64.b64decode(raw.encode("utf-8"), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise InvalidRequestError("Request body is not valid base64") from exc
    return raw


def build_profile_client(service_name: str, profile: RunStatusProfile) -> Any:
    return build_client(
        service_name,
        region=profile.aws_region,
        endpoint_url=profile.aws_endpoint_url,
        connect_timeout_seconds=profile.connect_timeout_seconds,
        read_timeout_seconds=profile.request_timeout_seconds,
    )
