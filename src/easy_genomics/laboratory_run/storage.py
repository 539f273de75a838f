"""LaboratoryRun and Laboratory record accessors (DynamoDB + local SQLite)."""

from __future__ import annotations

from decimal import Decimal
import json
import logging
from pathlib import Path
import sqlite3
from typing import Any, Mapping, Protocol

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from easy_genomics.utils.aws_clients import error_code, error_detail

from .contracts import Laboratory, LaboratoryRun
from .errors import ConditionFailedError, TransientDependencyError
from .taxonomy import normalize_status


logger = logging.getLogger("easy_genomics.laboratory_run.storage")


class LaboratoryRunStore(Protocol):
    def get_run(self, run_id: str, *, laboratory_id: str | None = None) -> LaboratoryRun | None:
        ...

    def update_run_status(
        self,
        run: LaboratoryRun,
        *,
        new_status: str,
        checked_at: str,
        changed_at: str,
    ) -> LaboratoryRun:
        ...

    def touch_status_checked(self, run: LaboratoryRun, *, checked_at: str) -> LaboratoryRun:
        ...


class LaboratoryStore(Protocol):
    def get_laboratory(self, laboratory_id: str) -> Laboratory | None:
        ...


class DynamoDbLaboratoryRunStore:
    """Run records keyed by (LaboratoryId, RunId) with a RunId GSI."""

    def __init__(self, client: Any, *, table_name: str, run_id_index: str = "RunId_Index") -> None:
        if not table_name:
            raise ValueError("table_name is required")
        self._client = client
        self.table_name = table_name
        self.run_id_index = run_id_index

    def get_run(self, run_id: str, *, laboratory_id: str | None = None) -> LaboratoryRun | None:
        """Read by table key with a consistent read when the laboratory is known, else via the RunId index."""
        normalized = str(run_id or "").strip()
        if not normalized:
            return None
        if laboratory_id:
            return self._get_by_key(normalized, laboratory_id)
        try:
            response = self._client.query(
                TableName=self.table_name,
                IndexName=self.run_id_index,
                KeyConditionExpression="#run_id = :run_id",
                ExpressionAttributeNames={"#run_id": "RunId"},
                ExpressionAttributeValues={":run_id": {"S": normalized}},
            )
        except (BotoCoreError, ClientError) as exc:
            raise _transient(exc, "query", self.table_name) from exc
        items = response.get("Items") or []
        if not items:
            return None
        if len(items) > 1:
            logger.warning("LaboratoryRun duplicate index rows run_id=%s count=%s", normalized, len(items))
        return LaboratoryRun.from_payload(_deserialize(items[0]))

    def _get_by_key(self, run_id: str, laboratory_id: str) -> LaboratoryRun | None:
        try:
            response = self._client.get_item(
                TableName=self.table_name,
                Key={"LaboratoryId": {"S": laboratory_id}, "RunId": {"S": run_id}},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise _transient(exc, "get_item", self.table_name) from exc
        item = response.get("Item")
        if not item:
            return None
        return LaboratoryRun.from_payload(_deserialize(item))

    def update_run_status(
        self,
        run: LaboratoryRun,
        *,
        new_status: str,
        checked_at: str,
        changed_at: str,
    ) -> LaboratoryRun:
        return self._conditional_update(
            run,
            update_expression=(
                "SET #status = :status, StatusChangedAt = :changed_at, "
                "StatusCheckedAt = :checked_at, ModifiedAt = :checked_at"
            ),
            values={
                ":status": normalize_status(new_status),
                ":changed_at": changed_at,
                ":checked_at": checked_at,
                ":expected_status": run.status,
            },
        )

    def touch_status_checked(self, run: LaboratoryRun, *, checked_at: str) -> LaboratoryRun:
        return self._conditional_update(
            run,
            update_expression="SET StatusCheckedAt = :checked_at",
            values={":checked_at": checked_at, ":expected_status": run.status},
        )

    def _conditional_update(
        self,
        run: LaboratoryRun,
        *,
        update_expression: str,
        values: Mapping[str, str],
    ) -> LaboratoryRun:
        serializer = TypeSerializer()
        try:
            response = self._client.update_item(
                TableName=self.table_name,
                Key={
                    "LaboratoryId": {"S": run.laboratory_id},
                    "RunId": {"S": run.run_id},
                },
                UpdateExpression=update_expression,
                ConditionExpression=(
                    "attribute_exists(RunId) AND #status = :expected_status AND "
                    "(attribute_not_exists(StatusCheckedAt) OR StatusCheckedAt <= :checked_at)"
                ),
                ExpressionAttributeNames={"#status": "Status"},
                ExpressionAttributeValues={key: serializer.serialize(value) for key, value in values.items()},
                ReturnValues="ALL_NEW",
            )
        except (BotoCoreError, ClientError) as exc:
            if error_code(exc) == "ConditionalCheckFailedException":
                raise ConditionFailedError(f"run_id={run.run_id}") from exc
            raise _transient(exc, "update_item", self.table_name) from exc
        return LaboratoryRun.from_payload(_deserialize(response.get("Attributes") or {}))


class DynamoDbLaboratoryStore:
    """Laboratory records keyed by (OrganizationId, LaboratoryId) with a LaboratoryId GSI."""

    def __init__(self, client: Any, *, table_name: str, laboratory_id_index: str = "LaboratoryId_Index") -> None:
        if not table_name:
            raise ValueError("table_name is required")
        self._client = client
        self.table_name = table_name
        self.laboratory_id_index = laboratory_id_index

    def get_laboratory(self, laboratory_id: str) -> Laboratory | None:
        normalized = str(laboratory_id or "").strip()
        if not normalized:
            return None
        try:
            response = self._client.query(
                TableName=self.table_name,
                IndexName=self.laboratory_id_index,
                KeyConditionExpression="#laboratory_id = :laboratory_id",
                ExpressionAttributeNames={"#laboratory_id": "LaboratoryId"},
                ExpressionAttributeValues={":laboratory_id": {"S": normalized}},
            )
        except (BotoCoreError, ClientError) as exc:
            raise _transient(exc, "query", self.table_name) from exc
        items = response.get("Items") or []
        if not items:
            return None
        return Laboratory.from_payload(_deserialize(items[0]))


class SqliteLaboratoryRunStore:
    """Local run + laboratory store with the same conditional-write rules as DynamoDB."""

    def __init__(self, *, locator: str) -> None:
        self.locator = locator
        path = Path(_sqlite_path(locator))
        path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def put_run(self, run: LaboratoryRun) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO laboratory_run (run_id, laboratory_id, status, status_checked_at, record_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    laboratory_id = excluded.laboratory_id,
                    status = excluded.status,
                    status_checked_at = excluded.status_checked_at,
                    record_json = excluded.record_json
                """,
                (run.run_id, run.laboratory_id, run.status, run.status_checked_at, _dumps(run.as_dict())),
            )

    def put_laboratory(self, laboratory: Laboratory) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO laboratory (laboratory_id, organization_id, record_json)
                VALUES (?, ?, ?)
                ON CONFLICT(laboratory_id) DO UPDATE SET
                    organization_id = excluded.organization_id,
                    record_json = excluded.record_json
                """,
                (laboratory.laboratory_id, laboratory.organization_id, _dumps(laboratory.as_dict())),
            )

    def get_run(self, run_id: str, *, laboratory_id: str | None = None) -> LaboratoryRun | None:
        normalized = str(run_id or "").strip()
        if not normalized:
            return None
        query = "SELECT record_json FROM laboratory_run WHERE run_id = ?"
        params: tuple[str, ...] = (normalized,)
        if laboratory_id:
            query += " AND laboratory_id = ?"
            params = (normalized, laboratory_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return LaboratoryRun.from_payload(json.loads(row[0]))

    def get_laboratory(self, laboratory_id: str) -> Laboratory | None:
        normalized = str(laboratory_id or "").strip()
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record_json FROM laboratory WHERE laboratory_id = ?",
                (normalized,),
            ).fetchone()
        if row is None:
            return None
        return Laboratory.from_payload(json.loads(row[0]))

    def update_run_status(
        self,
        run: LaboratoryRun,
        *,
        new_status: str,
        checked_at: str,
        changed_at: str,
    ) -> LaboratoryRun:
        return self._conditional_write(run, run.with_status(new_status, checked_at=checked_at, changed_at=changed_at))

    def touch_status_checked(self, run: LaboratoryRun, *, checked_at: str) -> LaboratoryRun:
        return self._conditional_write(run, run.with_checked_at(checked_at))

    def _conditional_write(self, expected: LaboratoryRun, updated: LaboratoryRun) -> LaboratoryRun:
        checked_at = updated.status_checked_at
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record_json FROM laboratory_run WHERE run_id = ?",
                (expected.run_id,),
            ).fetchone()
            if row is None:
                raise ConditionFailedError(f"run_id={expected.run_id}")
            # Merge onto the stored record so fields written by other writers survive.
            current = LaboratoryRun.from_payload(json.loads(row[0]))
            merged = current.as_dict()
            merged.update(
                {
                    key: value
                    for key, value in updated.as_dict().items()
                    if key in {"Status", "StatusCheckedAt", "StatusChangedAt", "ModifiedAt"}
                }
            )
            cursor = conn.execute(
                """
                UPDATE laboratory_run
                SET status = ?, status_checked_at = ?, record_json = ?
                WHERE run_id = ?
                  AND status = ?
                  AND (status_checked_at IS NULL OR status_checked_at <= ?)
                """,
                (
                    updated.status,
                    checked_at,
                    _dumps(merged),
                    expected.run_id,
                    expected.status,
                    checked_at,
                ),
            )
            if cursor.rowcount == 0:
                raise ConditionFailedError(f"run_id={expected.run_id}")
        return LaboratoryRun.from_payload(merged)

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS laboratory_run (
                    run_id TEXT PRIMARY KEY,
                    laboratory_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    status_checked_at TEXT,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS ix_laboratory_run_laboratory
                    ON laboratory_run (laboratory_id, status);
                CREATE TABLE IF NOT EXISTS laboratory (
                    laboratory_id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );
                """
            )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(_sqlite_path(self.locator), timeout=30.0)


def _transient(exc: BaseException, operation: str, table_name: str) -> TransientDependencyError:
    logger.warning(
        "DynamoDB %s failed table=%s code=%s detail=%s",
        operation,
        table_name,
        error_code(exc),
        error_detail(exc),
    )
    return TransientDependencyError(f"dynamodb_{operation}_failed:{error_code(exc)}")


def _deserialize(item: Mapping[str, Any]) -> dict[str, Any]:
    deserializer = TypeDeserializer()
    return {key: _plain(deserializer.deserialize(value)) for key, value in item.items()}


def _plain(value: Any) -> Any:
    # TypeDeserializer yields Decimal for numbers; the record contract is JSON-shaped.
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, set):
        return sorted(_plain(item) for item in value)
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def _dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator
