"""boto3 client construction and botocore error classification."""

from __future__ import annotations

import os
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError


def build_client(
    service_name: str,
    *,
    region: str | None = None,
    endpoint_url: str | None = None,
    connect_timeout_seconds: float = 3.0,
    read_timeout_seconds: float = 10.0,
    max_attempts: int = 2,
) -> Any:
    config = Config(
        connect_timeout=connect_timeout_seconds,
        read_timeout=read_timeout_seconds,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )
    return boto3.client(
        service_name,
        region_name=region or os.getenv("AWS_DEFAULT_REGION") or os.getenv("AWS_REGION"),
        endpoint_url=endpoint_url or os.getenv("AWS_ENDPOINT_URL"),
        config=config,
    )


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return exc.__class__.__name__


def error_detail(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or "")[:256]
    return str(exc)[:256]
