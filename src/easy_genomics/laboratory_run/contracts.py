"""LaboratoryRun record and processing-event contracts."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import json
from typing import Any, Mapping

from .taxonomy import normalize_status


class LaboratoryRunContractError(ValueError):
    """Raised when LaboratoryRun or processing-event payloads fail validation."""


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    LABORATORY_RUN = "LaboratoryRun"


_RUN_FIELDS: tuple[str, ...] = (
    "RunId",
    "LaboratoryId",
    "OrganizationId",
    "Status",
    "Platform",
    "ExternalRunId",
    "RunName",
    "UserId",
    "Owner",
    "WorkflowName",
    "PlatformApiBaseUrl",
    "CreatedAt",
    "StatusCheckedAt",
    "StatusChangedAt",
    "ModifiedAt",
)


@dataclass(frozen=True)
class LaboratoryRun:
    run_id: str
    laboratory_id: str
    organization_id: str
    status: str
    platform: str | None = None
    external_run_id: str | None = None
    run_name: str | None = None
    user_id: str | None = None
    owner: str | None = None
    workflow_name: str | None = None
    platform_api_base_url: str | None = None
    created_at: str | None = None
    status_checked_at: str | None = None
    status_changed_at: str | None = None
    modified_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LaboratoryRun":
        mapped = _as_mapping(payload, "LaboratoryRun")
        return cls(
            run_id=_require_non_empty_string(mapped.get("RunId"), "LaboratoryRun.RunId"),
            laboratory_id=_require_non_empty_string(mapped.get("LaboratoryId"), "LaboratoryRun.LaboratoryId"),
            organization_id=_require_non_empty_string(mapped.get("OrganizationId"), "LaboratoryRun.OrganizationId"),
            status=normalize_status(_require_non_empty_string(mapped.get("Status"), "LaboratoryRun.Status")),
            platform=_optional_string(mapped.get("Platform")),
            external_run_id=_optional_string(mapped.get("ExternalRunId")),
            run_name=_optional_string(mapped.get("RunName")),
            user_id=_optional_string(mapped.get("UserId")),
            owner=_optional_string(mapped.get("Owner")),
            workflow_name=_optional_string(mapped.get("WorkflowName")),
            platform_api_base_url=_optional_string(mapped.get("PlatformApiBaseUrl")),
            created_at=_optional_string(mapped.get("CreatedAt")),
            status_checked_at=_optional_string(mapped.get("StatusCheckedAt")),
            status_changed_at=_optional_string(mapped.get("StatusChangedAt")),
            modified_at=_optional_string(mapped.get("ModifiedAt")),
            extra={key: value for key, value in mapped.items() if key not in _RUN_FIELDS},
        )

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "RunId": self.run_id,
                "LaboratoryId": self.laboratory_id,
                "OrganizationId": self.organization_id,
                "Status": self.status,
            }
        )
        optional = {
            "Platform": self.platform,
            "ExternalRunId": self.external_run_id,
            "RunName": self.run_name,
            "UserId": self.user_id,
            "Owner": self.owner,
            "WorkflowName": self.workflow_name,
            "PlatformApiBaseUrl": self.platform_api_base_url,
            "CreatedAt": self.created_at,
            "StatusCheckedAt": self.status_checked_at,
            "StatusChangedAt": self.status_changed_at,
            "ModifiedAt": self.modified_at,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    def with_status(self, status: str, *, checked_at: str, changed_at: str) -> "LaboratoryRun":
        return replace(
            self,
            status=normalize_status(status),
            status_checked_at=checked_at,
            status_changed_at=changed_at,
            modified_at=checked_at,
        )

    def with_checked_at(self, checked_at: str) -> "LaboratoryRun":
        return replace(self, status_checked_at=checked_at)


@dataclass(frozen=True)
class Laboratory:
    laboratory_id: str
    organization_id: str
    name: str | None = None
    workspace_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Laboratory":
        mapped = _as_mapping(payload, "Laboratory")
        return cls(
            laboratory_id=_require_non_empty_string(mapped.get("LaboratoryId"), "Laboratory.LaboratoryId"),
            organization_id=_require_non_empty_string(mapped.get("OrganizationId"), "Laboratory.OrganizationId"),
            name=_optional_string(mapped.get("Name")),
            workspace_id=_optional_string(mapped.get("NextFlowTowerWorkspaceId")),
        )

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "LaboratoryId": self.laboratory_id,
            "OrganizationId": self.organization_id,
        }
        if self.name is not None:
            payload["Name"] = self.name
        if self.workspace_id is not None:
            payload["NextFlowTowerWorkspaceId"] = self.workspace_id
        return payload


@dataclass(frozen=True)
class ProcessingEvent:
    """Reconciliation request or change notification for one LaboratoryRun.

    ``grouping_key`` and ``dedup_key`` travel as transport attributes; the
    message body only carries Operation, Type and Record.
    """

    operation: Operation
    entity_type: EntityType
    record: LaboratoryRun
    grouping_key: str
    dedup_key: str | None = None

    @classmethod
    def for_run_update(cls, run: LaboratoryRun, *, dedup_key: str | None = None) -> "ProcessingEvent":
        return cls(
            operation=Operation.UPDATE,
            entity_type=EntityType.LABORATORY_RUN,
            record=run,
            grouping_key=run.run_id,
            dedup_key=dedup_key,
        )

    @classmethod
    def from_body(
        cls,
        body: Mapping[str, Any] | str,
        *,
        grouping_key: str | None = None,
        dedup_key: str | None = None,
    ) -> "ProcessingEvent":
        mapped = _decode_body(body)
        operation = _parse_enum(Operation, mapped.get("Operation"), "ProcessingEvent.Operation")
        entity_type = _parse_enum(EntityType, mapped.get("Type"), "ProcessingEvent.Type")
        record = LaboratoryRun.from_payload(_as_mapping(mapped.get("Record"), "ProcessingEvent.Record"))
        group = _optional_string(grouping_key) or record.run_id
        if group != record.run_id:
            raise LaboratoryRunContractError(
                f"grouping key must equal RunId: grouping_key={group!r}, run_id={record.run_id!r}"
            )
        return cls(
            operation=operation,
            entity_type=entity_type,
            record=record,
            grouping_key=group,
            dedup_key=_optional_string(dedup_key),
        )

    def body(self) -> dict[str, Any]:
        return {
            "Operation": self.operation.value,
            "Type": self.entity_type.value,
            "Record": self.record.as_dict(),
        }

    def encode(self) -> str:
        return json.dumps(self.body(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _decode_body(body: Mapping[str, Any] | str) -> Mapping[str, Any]:
    if isinstance(body, (str, bytes)):
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise LaboratoryRunContractError(f"ProcessingEvent body is not valid JSON: {exc}") from exc
    else:
        decoded = body
    mapped = _as_mapping(decoded, "ProcessingEvent")
    # SNS -> SQS subscriptions without raw delivery wrap the body in a notification.
    if mapped.get("Type") == "Notification" and isinstance(mapped.get("Message"), str):
        return _decode_body(mapped["Message"])
    return mapped


def _parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    text = str(value or "").strip()
    try:
        return enum_cls(text)
    except ValueError as exc:
        allowed = [item.value for item in enum_cls]
        raise LaboratoryRunContractError(f"{field_name} must be one of {allowed}; got {text!r}") from exc


def _as_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise LaboratoryRunContractError(f"{field_name} must be a mapping")
    return value


def _require_non_empty_string(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise LaboratoryRunContractError(f"{field_name} is required")
    return text


def _optional_string(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
