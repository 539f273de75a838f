"""Organization / laboratory scope checks over Cognito authorizer claims."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Mapping, Protocol


logger = logging.getLogger("easy_genomics.laboratory_run.authorization")

ACCESS_STATUS_ACTIVE = "Active"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str | None
    organization_access: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api_gateway_event(cls, event: Mapping[str, Any]) -> "CallerIdentity":
        request_context = event.get("requestContext") if isinstance(event.get("requestContext"), Mapping) else {}
        authorizer = request_context.get("authorizer") if isinstance(request_context.get("authorizer"), Mapping) else {}
        claims = authorizer.get("claims") if isinstance(authorizer.get("claims"), Mapping) else {}
        return cls.from_claims(claims)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "CallerIdentity":
        return cls(
            user_id=_none_if_blank(claims.get("UserId") or claims.get("sub")),
            organization_access=_parse_organization_access(claims.get("OrganizationAccess")),
        )

    def organization_entry(self, organization_id: str) -> Mapping[str, Any]:
        entry = self.organization_access.get(organization_id)
        return entry if isinstance(entry, Mapping) else {}


class AuthorizationGate(Protocol):
    def has_org_admin_scope(self, caller: CallerIdentity, organization_id: str) -> bool:
        ...

    def has_lab_manager_scope(self, caller: CallerIdentity, organization_id: str, laboratory_id: str) -> bool:
        ...

    def has_lab_technician_scope(self, caller: CallerIdentity, organization_id: str, laboratory_id: str) -> bool:
        ...


class ClaimsAuthorizationGate:
    """Scope checks against the ``OrganizationAccess`` claim.

    The claim is a JSON object keyed by OrganizationId::

        {"<org>": {"Status": "Active", "OrganizationAdmin": true,
                   "LaboratoryAccess": {"<lab>": {"Status": "Active",
                                                  "LabManager": false,
                                                  "LabTechnician": true}}}}
    """

    def has_org_admin_scope(self, caller: CallerIdentity, organization_id: str) -> bool:
        entry = caller.organization_entry(organization_id)
        return _is_active(entry) and entry.get("OrganizationAdmin") is True

    def has_lab_manager_scope(self, caller: CallerIdentity, organization_id: str, laboratory_id: str) -> bool:
        return _laboratory_flag(caller, organization_id, laboratory_id, "LabManager")

    def has_lab_technician_scope(self, caller: CallerIdentity, organization_id: str, laboratory_id: str) -> bool:
        return _laboratory_flag(caller, organization_id, laboratory_id, "LabTechnician")


def has_laboratory_run_access(
    gate: AuthorizationGate,
    caller: CallerIdentity,
    organization_id: str,
    laboratory_id: str,
) -> bool:
    return (
        gate.has_org_admin_scope(caller, organization_id)
        or gate.has_lab_manager_scope(caller, organization_id, laboratory_id)
        or gate.has_lab_technician_scope(caller, organization_id, laboratory_id)
    )


def _laboratory_flag(caller: CallerIdentity, organization_id: str, laboratory_id: str, flag: str) -> bool:
    entry = caller.organization_entry(organization_id)
    if not _is_active(entry):
        return False
    laboratories = entry.get("LaboratoryAccess")
    if not isinstance(laboratories, Mapping):
        return False
    laboratory = laboratories.get(laboratory_id)
    if not isinstance(laboratory, Mapping):
        return False
    return _is_active(laboratory) and laboratory.get(flag) is True


def _is_active(entry: Mapping[str, Any]) -> bool:
    return str(entry.get("Status") or "") == ACCESS_STATUS_ACTIVE


def _parse_organization_access(value: Any) -> dict[str, Any]:
    if value in (None, ""):
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    try:
        parsed = json.loads(str(value))
    except json.JSONDecodeError:
        logger.warning("OrganizationAccess claim is not valid JSON; treating caller as unscoped")
        return {}
    return dict(parsed) if isinstance(parsed, Mapping) else {}


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
