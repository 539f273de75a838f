"""LaboratoryRun status reconciliation profile loader."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml


_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

DEFAULT_SEQERA_API_BASE_URL = "https://api.cloud.seqera.io"
DEFAULT_TOKEN_PARAMETER_TEMPLATE = (
    "/easy-genomics/organization/{organization_id}/laboratory/{laboratory_id}/nf-access-token"
)


class RunStatusConfigError(ValueError):
    """Raised when the run-status profile is incomplete or malformed."""


@dataclass(frozen=True)
class RunStatusProfile:
    profile_id: str
    aws_region: str | None
    aws_endpoint_url: str | None
    laboratory_run_table: str
    laboratory_table: str
    run_id_index: str
    laboratory_id_index: str
    run_update_topic_arn: str | None
    run_notification_topic_arn: str | None
    run_update_queue_url: str | None
    seqera_api_base_url: str
    token_parameter_template: str
    store_dsn: str | None = None
    connect_timeout_seconds: float = 3.0
    request_timeout_seconds: float = 10.0
    batch_size: int = 5
    publish_max_workers: int = 8
    processor_max_workers: int = 4
    receive_wait_seconds: int = 20
    visibility_timeout_seconds: int = 120
    dedup_window_seconds: float = 300.0
    poll_sleep_seconds: float = 1.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.batch_size < 1 or self.batch_size > 10:
            raise RunStatusConfigError("batch_size must be between 1 and 10")
        if self.publish_max_workers < 1 or self.processor_max_workers < 1:
            raise RunStatusConfigError("max_workers must be >= 1")
        if self.connect_timeout_seconds <= 0 or self.request_timeout_seconds <= 0:
            raise RunStatusConfigError("timeouts must be > 0")
        if self.dedup_window_seconds <= 0:
            raise RunStatusConfigError("dedup_window_seconds must be > 0")
        if self.store_dsn is None and (not self.laboratory_run_table or not self.laboratory_table):
            raise RunStatusConfigError("laboratory_run_table and laboratory_table are required without store_dsn")

    @classmethod
    def load(cls, path: Path) -> "RunStatusProfile":
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(data, Mapping):
            raise RunStatusConfigError("run-status profile must be a mapping")
        profile_id = _none_if_blank(_resolve_env(data.get("profile_id")))
        if not profile_id:
            raise RunStatusConfigError("profile_id is required")
        wiring = _section(data, "wiring")
        aws = _section(wiring, "aws")
        tables = _section(wiring, "tables")
        channels = _section(wiring, "channels")
        seqera = _section(wiring, "seqera")
        processor = _section(wiring, "processor")
        name_prefix = _none_if_blank(_resolve_env(wiring.get("name_prefix")))
        return cls(
            profile_id=profile_id,
            aws_region=_none_if_blank(_resolve_env(aws.get("region"))),
            aws_endpoint_url=_none_if_blank(_resolve_env(aws.get("endpoint_url"))),
            laboratory_run_table=_table_name(tables.get("laboratory_run"), name_prefix, "laboratory-run-table"),
            laboratory_table=_table_name(tables.get("laboratory"), name_prefix, "laboratory-table"),
            run_id_index=str(_resolve_env(tables.get("run_id_index")) or "RunId_Index"),
            laboratory_id_index=str(_resolve_env(tables.get("laboratory_id_index")) or "LaboratoryId_Index"),
            run_update_topic_arn=_none_if_blank(_resolve_env(channels.get("run_update_topic_arn"))),
            run_notification_topic_arn=_none_if_blank(_resolve_env(channels.get("run_notification_topic_arn"))),
            run_update_queue_url=_none_if_blank(_resolve_env(channels.get("run_update_queue_url"))),
            seqera_api_base_url=str(_resolve_env(seqera.get("api_base_url")) or DEFAULT_SEQERA_API_BASE_URL),
            token_parameter_template=str(
                _resolve_env(seqera.get("token_parameter_template")) or DEFAULT_TOKEN_PARAMETER_TEMPLATE
            ),
            store_dsn=_none_if_blank(_resolve_env(tables.get("store_dsn"))),
            connect_timeout_seconds=_as_float(aws.get("connect_timeout_seconds"), 3.0, "connect_timeout_seconds"),
            request_timeout_seconds=_as_float(aws.get("request_timeout_seconds"), 10.0, "request_timeout_seconds"),
            batch_size=_as_int(processor.get("batch_size"), 5, "batch_size"),
            publish_max_workers=_as_int(channels.get("publish_max_workers"), 8, "publish_max_workers"),
            processor_max_workers=_as_int(processor.get("max_workers"), 4, "max_workers"),
            receive_wait_seconds=_as_int(processor.get("receive_wait_seconds"), 20, "receive_wait_seconds"),
            visibility_timeout_seconds=_as_int(
                processor.get("visibility_timeout_seconds"), 120, "visibility_timeout_seconds"
            ),
            dedup_window_seconds=_as_float(channels.get("dedup_window_seconds"), 300.0, "dedup_window_seconds"),
            poll_sleep_seconds=_as_float(processor.get("poll_sleep_seconds"), 1.0, "poll_sleep_seconds"),
            log_level=str(_resolve_env(data.get("log_level")) or "INFO").upper(),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunStatusProfile":
        env = os.environ if environ is None else environ
        name_prefix = _none_if_blank(env.get("NAME_PREFIX"))
        return cls(
            profile_id=str(env.get("ENV_TYPE") or "lambda"),
            aws_region=_none_if_blank(env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION")),
            aws_endpoint_url=_none_if_blank(env.get("AWS_ENDPOINT_URL")),
            laboratory_run_table=_table_name(env.get("DYNAMODB_LABORATORY_RUN_TABLE"), name_prefix, "laboratory-run-table"),
            laboratory_table=_table_name(env.get("DYNAMODB_LABORATORY_TABLE"), name_prefix, "laboratory-table"),
            run_id_index=str(env.get("DYNAMODB_RUN_ID_INDEX") or "RunId_Index"),
            laboratory_id_index=str(env.get("DYNAMODB_LABORATORY_ID_INDEX") or "LaboratoryId_Index"),
            run_update_topic_arn=_none_if_blank(env.get("SNS_LABORATORY_RUN_UPDATE_TOPIC")),
            run_notification_topic_arn=_none_if_blank(env.get("SNS_LABORATORY_RUN_NOTIFICATION_TOPIC")),
            run_update_queue_url=_none_if_blank(env.get("SQS_LABORATORY_RUN_UPDATE_QUEUE")),
            seqera_api_base_url=str(env.get("SEQERA_API_BASE_URL") or DEFAULT_SEQERA_API_BASE_URL),
            token_parameter_template=str(env.get("SEQERA_TOKEN_PARAMETER_TEMPLATE") or DEFAULT_TOKEN_PARAMETER_TEMPLATE),
            store_dsn=_none_if_blank(env.get("LABORATORY_RUN_STORE_DSN")),
            connect_timeout_seconds=_as_float(env.get("CONNECT_TIMEOUT_SECONDS"), 3.0, "CONNECT_TIMEOUT_SECONDS"),
            request_timeout_seconds=_as_float(env.get("REQUEST_TIMEOUT_SECONDS"), 10.0, "REQUEST_TIMEOUT_SECONDS"),
            batch_size=_as_int(env.get("RUN_UPDATE_BATCH_SIZE"), 5, "RUN_UPDATE_BATCH_SIZE"),
            publish_max_workers=_as_int(env.get("PUBLISH_MAX_WORKERS"), 8, "PUBLISH_MAX_WORKERS"),
            processor_max_workers=_as_int(env.get("PROCESSOR_MAX_WORKERS"), 4, "PROCESSOR_MAX_WORKERS"),
            dedup_window_seconds=_as_float(env.get("CHANNEL_DEDUP_WINDOW_SECONDS"), 300.0, "CHANNEL_DEDUP_WINDOW_SECONDS"),
            log_level=str(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def require_topic(self, which: str) -> str:
        value = self.run_update_topic_arn if which == "update" else self.run_notification_topic_arn
        if not value:
            raise RunStatusConfigError(f"{which} topic ARN is not configured")
        return value


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key) or {}
    if not isinstance(value, Mapping):
        raise RunStatusConfigError(f"{key} must be a mapping")
    return value


def _table_name(explicit: Any, name_prefix: str | None, suffix: str) -> str:
    resolved = _none_if_blank(_resolve_env(explicit))
    if resolved:
        return resolved
    if name_prefix:
        return f"{name_prefix}-{suffix}"
    return ""


def _resolve_env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    match = _ENV_PATTERN.fullmatch(value.strip())
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _as_int(value: Any, default: int, field_name: str) -> int:
    resolved = _resolve_env(value)
    if resolved in (None, ""):
        return default
    try:
        return int(resolved)
    except (TypeError, ValueError) as exc:
        raise RunStatusConfigError(f"{field_name} must be an integer") from exc


def _as_float(value: Any, default: float, field_name: str) -> float:
    resolved = _resolve_env(value)
    if resolved in (None, ""):
        return default
    try:
        return float(resolved)
    except (TypeError, ValueError) as exc:
        raise RunStatusConfigError(f"{field_name} must be a number") from exc


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
