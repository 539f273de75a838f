"""LaboratoryRun error taxonomy and API response helpers."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping


logger = logging.getLogger("easy_genomics.laboratory_run.errors")

_RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
}


class LaboratoryRunError(RuntimeError):
    """Stable, caller-safe error surfaced with a reason code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        message = f"{self.code}:{detail}" if detail else self.code
        super().__init__(message)

    @property
    def public_message(self) -> str:
        return self.detail or self.default_message


class InvalidRequestError(LaboratoryRunError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(LaboratoryRunError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class LaboratoryNotFoundError(NotFoundError):
    code = "LABORATORY_NOT_FOUND"
    default_message = "Laboratory not found"


class LaboratoryRunNotFoundError(NotFoundError):
    code = "LABORATORY_RUN_NOT_FOUND"
    default_message = "Laboratory run not found"


class UnauthorizedAccessError(LaboratoryRunError):
    code = "UNAUTHORIZED_ACCESS"
    status_code = 403
    default_message = "Unauthorized access"


class ConditionFailedError(LaboratoryRunError):
    code = "CONDITION_FAILED"
    status_code = 409
    default_message = "Conditional update rejected"


class TransientDependencyError(LaboratoryRunError):
    code = "TRANSIENT_DEPENDENCY_FAILURE"
    status_code = 503
    default_message = "Dependency unavailable"


class PublishError(LaboratoryRunError):
    code = "PUBLISH_FAILURE"
    status_code = 502
    default_message = "Failed to publish message"


def reason_code(exc: BaseException) -> str:
    if isinstance(exc, LaboratoryRunError):
        return exc.code
    return "INTERNAL_ERROR"


def build_response(status_code: int, body: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": int(status_code),
        "headers": dict(_RESPONSE_HEADERS),
        "body": json.dumps(dict(body), ensure_ascii=True, separators=(",", ":")),
    }


def build_error_response(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, LaboratoryRunError):
        logger.warning("LaboratoryRun request rejected code=%s detail=%s", exc.code, exc.detail)
        return build_response(exc.status_code, {"Error": exc.public_message, "ErrorCode": exc.code})
    logger.exception("LaboratoryRun request failed unexpectedly")
    return build_response(500, {"Error": "Internal error", "ErrorCode": "INTERNAL_ERROR"})
