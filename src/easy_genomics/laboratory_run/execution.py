"""Execution service clients: Seqera Cloud (REST) and AWS HealthOmics (boto3)."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from botocore.exceptions import BotoCoreError, ClientError
import requests

from easy_genomics.utils.aws_clients import error_code, error_detail
from easy_genomics.utils.param_store import ParameterStoreError, SsmParameterReader

from .contracts import Laboratory, LaboratoryRun
from .errors import LaboratoryRunError, TransientDependencyError
from .taxonomy import PLATFORM_OMICS, PLATFORM_SEQERA


logger = logging.getLogger("easy_genomics.laboratory_run.execution")

_RETRYABLE_HTTP = {408, 425, 429}


class ExecutionReferenceError(LaboratoryRunError):
    """The run cannot be looked up on its execution platform as recorded."""

    code = "EXECUTION_REFERENCE_INVALID"
    status_code = 422
    default_message = "Run execution reference is invalid"


class ExecutionServiceClient(Protocol):
    def get_run_status(self, run: LaboratoryRun, laboratory: Laboratory | None) -> str:
        ...


class SeqeraExecutionClient:
    def __init__(
        self,
        *,
        parameter_reader: SsmParameterReader,
        api_base_url: str,
        token_parameter_template: str,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.parameter_reader = parameter_reader
        self.api_base_url = api_base_url.rstrip("/")
        self.token_parameter_template = token_parameter_template
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def get_run_status(self, run: LaboratoryRun, laboratory: Laboratory | None) -> str:
        workflow_id = _require_reference(run)
        if laboratory is None or not laboratory.workspace_id:
            raise ExecutionReferenceError(f"run_id={run.run_id}:seqera_workspace_missing")
        parameter_name = self.token_parameter_template.format(
            organization_id=laboratory.organization_id,
            laboratory_id=laboratory.laboratory_id,
        )
        token = self._access_token(parameter_name, run)
        base_url = (run.platform_api_base_url or self.api_base_url).rstrip("/")
        url = f"{base_url}/workflow/{workflow_id}"
        try:
            response = self._session.get(
                url,
                params={"workspaceId": laboratory.workspace_id},
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise TransientDependencyError(f"seqera_timeout:run_id={run.run_id}") from exc
        except requests.RequestException as exc:
            raise TransientDependencyError(f"seqera_request_failed:{str(exc)[:128]}") from exc

        if response.status_code in (401, 403):
            # Tokens rotate; drop the cached copy so the redelivery reads a fresh one.
            self.parameter_reader.invalidate(parameter_name)
            raise TransientDependencyError(f"seqera_http_{response.status_code}:run_id={run.run_id}")
        if response.status_code == 404:
            raise ExecutionReferenceError(f"run_id={run.run_id}:seqera_workflow_not_found")
        if response.status_code in _RETRYABLE_HTTP or response.status_code >= 500:
            raise TransientDependencyError(f"seqera_http_{response.status_code}:run_id={run.run_id}")
        if response.status_code >= 400:
            raise ExecutionReferenceError(f"run_id={run.run_id}:seqera_http_{response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientDependencyError("seqera_response_invalid_json") from exc
        workflow = body.get("workflow") if isinstance(body, Mapping) else None
        status = workflow.get("status") if isinstance(workflow, Mapping) else None
        logger.debug("Seqera workflow status run_id=%s workflow_id=%s status=%s", run.run_id, workflow_id, status)
        return str(status or "")

    def _access_token(self, parameter_name: str, run: LaboratoryRun) -> str:
        try:
            return self.parameter_reader.get(parameter_name)
        except ParameterStoreError as exc:
            if exc.transient:
                raise TransientDependencyError(f"seqera_token_unavailable:{exc.reason}") from exc
            raise ExecutionReferenceError(f"run_id={run.run_id}:seqera_token_missing") from exc


class OmicsExecutionClient:
    def __init__(self, client: Any) -> None:
        self._client = client

    def get_run_status(self, run: LaboratoryRun, laboratory: Laboratory | None) -> str:
        external_id = _require_reference(run)
        try:
            response = self._client.get_run(id=external_id)
        except (BotoCoreError, ClientError) as exc:
            code = error_code(exc)
            if code in {"ResourceNotFoundException", "ValidationException"}:
                raise ExecutionReferenceError(f"run_id={run.run_id}:omics_{code}") from exc
            logger.warning(
                "HealthOmics get_run failed run_id=%s external_id=%s code=%s detail=%s",
                run.run_id,
                external_id,
                code,
                error_detail(exc),
            )
            raise TransientDependencyError(f"omics_get_run_failed:{code}") from exc
        return str(response.get("status") or "")


class PlatformExecutionRouter:
    """Dispatches a status query to the client for the run's platform."""

    def __init__(self, clients: Mapping[str, ExecutionServiceClient]) -> None:
        self.clients = dict(clients)

    def get_run_status(self, run: LaboratoryRun, laboratory: Laboratory | None) -> str:
        client = self.clients.get(str(run.platform or "").strip())
        if client is None:
            raise ExecutionReferenceError(f"run_id={run.run_id}:platform_unsupported:{run.platform!r}")
        return client.get_run_status(run, laboratory)


def build_execution_router(
    *,
    seqera: ExecutionServiceClient | None = None,
    omics: ExecutionServiceClient | None = None,
) -> PlatformExecutionRouter:
    clients: dict[str, ExecutionServiceClient] = {}
    if seqera is not None:
        clients[PLATFORM_SEQERA] = seqera
    if omics is not None:
        clients[PLATFORM_OMICS] = omics
    return PlatformExecutionRouter(clients)


def _require_reference(run: LaboratoryRun) -> str:
    if not run.external_run_id:
        raise ExecutionReferenceError(f"run_id={run.run_id}:external_run_id_missing")
    return run.external_run_id
