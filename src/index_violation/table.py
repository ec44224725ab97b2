"""DynamoDB table adapter: describe, segmented scan, batch delete, update."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Iterable, Mapping, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
    ProfileNotFound,
)

from .attributes import AttributeValue, parse_plain_string
from .config import AuditConfig, IndexKey
from .errors import BackendError, ConfigError, InputShapeError, WriteKind, WriteOutcome

logger = logging.getLogger("index_violation.table")

DDB_LOCAL_ENDPOINT = "http://localhost:8000"
DEFAULT_CAPACITY_UNITS = 100
CLIENT_MAX_ATTEMPTS = 10

_CREDENTIAL_ERROR_CODES = {
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "AccessDeniedException",
}


@dataclass(frozen=True)
class TableSchema:
    table_name: str
    hash_key_name: str
    hash_key_type: str
    range_key_name: str | None = None
    range_key_type: str | None = None
    read_capacity_units: int = DEFAULT_CAPACITY_UNITS
    write_capacity_units: int = DEFAULT_CAPACITY_UNITS
    index_names: tuple[str, ...] = ()

    @property
    def has_range_key(self) -> bool:
        return self.range_key_name is not None

    def projection_attributes(self, index_keys: Iterable[IndexKey]) -> list[str]:
        names = [self.hash_key_name]
        if self.range_key_name:
            names.append(self.range_key_name)
        for key in index_keys:
            if key.name not in names:
                names.append(key.name)
        return names

    def primary_key_of(self, item: Mapping[str, AttributeValue]) -> dict[str, AttributeValue]:
        key = {self.hash_key_name: item[self.hash_key_name]}
        if self.range_key_name:
            key[self.range_key_name] = item[self.range_key_name]
        return key

    def primary_key_from_strings(self, hash_value: str | None, range_value: str | None) -> dict[str, AttributeValue]:
        if not hash_value:
            raise InputShapeError("TABLE_HASH_KEY_BLANK", "key value must not be empty")
        key = {self.hash_key_name: parse_plain_string(self.hash_key_type, hash_value)}
        if self.range_key_name and self.range_key_type:
            if not range_value:
                raise InputShapeError("TABLE_RANGE_KEY_BLANK", "key value must not be empty")
            key[self.range_key_name] = parse_plain_string(self.range_key_type, range_value)
        return key

    def validate_index_keys(self, index_keys: Iterable[tuple[str, IndexKey]]) -> None:
        for role, key in index_keys:
            field_name = "index.hash_key" if role == "HASH" else "index.range_key"
            if key.name == self.hash_key_name:
                raise ConfigError("INDEX_KEY_NAME_CONFLICT", f"{field_name} cannot be equal to table hash key name")
            if self.range_key_name and key.name == self.range_key_name:
                raise ConfigError("INDEX_KEY_NAME_CONFLICT", f"{field_name} cannot be equal to table range key name")


@dataclass(frozen=True)
class ScanPage:
    items: list[dict[str, AttributeValue]]
    cursor: dict[str, AttributeValue] | None
    consumed_capacity: float


@dataclass(frozen=True)
class BatchDeleteResult:
    unprocessed_keys: list[dict[str, AttributeValue]]
    consumed_capacity: float


class EditAction(str, Enum):
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass(frozen=True)
class AttributeEdit:
    name: str
    action: EditAction
    value: AttributeValue | None = None


def build_dynamodb_client(config: AuditConfig) -> Any:
    endpoint = config.endpoint_url
    if config.local and not endpoint:
        endpoint = DDB_LOCAL_ENDPOINT
    try:
        session = boto3.Session(profile_name=config.aws_profile, region_name=config.region)
        return session.client(
            "dynamodb",
            endpoint_url=endpoint,
            config=Config(retries={"max_attempts": CLIENT_MAX_ATTEMPTS, "mode": "standard"}),
        )
    except ProfileNotFound as exc:
        raise BackendError("CREDENTIALS_INVALID", str(exc)[:256]) from exc


def describe_table(client: Any, table_name: str) -> TableSchema:
    try:
        response = client.describe_table(TableName=table_name)
    except ClientError as exc:
        code = _error_code(exc)
        if code == "ResourceNotFoundException":
            raise BackendError("TABLE_NOT_FOUND", f"table {table_name} does not exist in the given region") from exc
        if code in _CREDENTIAL_ERROR_CODES:
            raise BackendError("CREDENTIALS_INVALID", _error_detail(exc)) from exc
        raise BackendError("DESCRIBE_TABLE_FAILED", _error_detail(exc)) from exc
    except (NoCredentialsError, PartialCredentialsError) as exc:
        raise BackendError("CREDENTIALS_INVALID", str(exc)[:256]) from exc
    except BotoCoreError as exc:
        raise BackendError("DESCRIBE_TABLE_FAILED", str(exc)[:256]) from exc
    schema = table_schema_from_description(response.get("Table") or {})
    logger.info(
        "Table described table=%s hash_key=%s range_key=%s rcu=%s wcu=%s indexes=%s",
        schema.table_name,
        schema.hash_key_name,
        schema.range_key_name or "-",
        schema.read_capacity_units,
        schema.write_capacity_units,
        ",".join(schema.index_names) or "-",
    )
    return schema


def table_schema_from_description(table: Mapping[str, Any]) -> TableSchema:
    key_names: dict[str, str] = {}
    for element in table.get("KeySchema") or []:
        key_names[str(element.get("KeyType"))] = str(element.get("AttributeName"))
    definitions = {
        str(row.get("AttributeName")): str(row.get("AttributeType")) for row in table.get("AttributeDefinitions") or []
    }
    hash_name = key_names.get("HASH")
    if not hash_name:
        raise BackendError("TABLE_KEY_SCHEMA_INVALID", str(table.get("TableName") or ""))
    range_name = key_names.get("RANGE")
    throughput = table.get("ProvisionedThroughput") or {}
    return TableSchema(
        table_name=str(table.get("TableName") or ""),
        hash_key_name=hash_name,
        hash_key_type=definitions.get(hash_name, "S"),
        range_key_name=range_name,
        range_key_type=definitions.get(range_name, "S") if range_name else None,
        read_capacity_units=int(throughput.get("ReadCapacityUnits") or 0) or DEFAULT_CAPACITY_UNITS,
        write_capacity_units=int(throughput.get("WriteCapacityUnits") or 0) or DEFAULT_CAPACITY_UNITS,
        index_names=tuple(str(row.get("IndexName")) for row in table.get("GlobalSecondaryIndexes") or []),
    )


class DynamoTable:
    def __init__(self, client: Any, schema: TableSchema) -> None:
        self._client = client
        self.schema = schema

    @property
    def name(self) -> str:
        return self.schema.table_name

    def scan_page(
        self,
        *,
        segment: int,
        total_segments: int,
        attributes: Sequence[str],
        cursor: Mapping[str, AttributeValue] | None = None,
    ) -> ScanPage:
        names = {f"#p{index}": name for index, name in enumerate(attributes)}
        request: dict[str, Any] = {
            "TableName": self.name,
            "Segment": segment,
            "TotalSegments": total_segments,
            "ReturnConsumedCapacity": "TOTAL",
        }
        if names:
            request["ProjectionExpression"] = ", ".join(names)
            request["ExpressionAttributeNames"] = names
        if cursor:
            request["ExclusiveStartKey"] = dict(cursor)
        try:
            response = self._client.scan(**request)
        except (ClientError, BotoCoreError) as exc:
            raise BackendError("SCAN_FAILED", f"segment={segment} {_error_detail(exc)}") from exc
        return ScanPage(
            items=list(response.get("Items") or []),
            cursor=response.get("LastEvaluatedKey") or None,
            consumed_capacity=consumed_units(response.get("ConsumedCapacity")),
        )

    def batch_delete(self, keys: Sequence[Mapping[str, AttributeValue]]) -> BatchDeleteResult:
        requests = [{"DeleteRequest": {"Key": dict(key)}} for key in keys]
        try:
            response = self._client.batch_write_item(
                RequestItems={self.name: requests},
                ReturnConsumedCapacity="TOTAL",
            )
        except (ClientError, BotoCoreError) as exc:
            raise BackendError("BATCH_DELETE_FAILED", _error_detail(exc)) from exc
        unprocessed = (response.get("UnprocessedItems") or {}).get(self.name) or []
        return BatchDeleteResult(
            unprocessed_keys=[dict(row.get("DeleteRequest", {}).get("Key") or {}) for row in unprocessed],
            consumed_capacity=consumed_units(response.get("ConsumedCapacity")),
        )

    def update(
        self,
        key: Mapping[str, AttributeValue],
        edits: Sequence[AttributeEdit],
        expected: Mapping[str, AttributeValue] | None = None,
    ) -> WriteOutcome:
        if not edits:
            return WriteOutcome(WriteKind.SKIPPED)
        request = build_update_request(self.name, key, edits, expected)
        try:
            response = self._client.update_item(**request)
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return WriteOutcome(WriteKind.CONDITIONAL_CHECK_FAILED, _error_detail(exc) or "conditional check failed")
            return WriteOutcome(WriteKind.FAILED, _error_detail(exc) or _error_code(exc))
        except BotoCoreError as exc:
            return WriteOutcome(WriteKind.FAILED, str(exc)[:256])
        return WriteOutcome(WriteKind.APPLIED, consumed_capacity=consumed_units(response.get("ConsumedCapacity")))


def build_update_request(
    table_name: str,
    key: Mapping[str, AttributeValue],
    edits: Sequence[AttributeEdit],
    expected: Mapping[str, AttributeValue] | None = None,
) -> dict[str, Any]:
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_clauses: list[str] = []
    remove_clauses: list[str] = []
    conditions: list[str] = []
    for index, edit in enumerate(edits):
        alias = f"#u{index}"
        names[alias] = edit.name
        if edit.action is EditAction.PUT:
            values[f":u{index}"] = dict(edit.value or {})
            set_clauses.append(f"{alias} = :u{index}")
        else:
            remove_clauses.append(alias)
        if expected is not None and edit.name in expected:
            values[f":e{index}"] = dict(expected[edit.name])
            conditions.append(f"{alias} = :e{index}")
    parts: list[str] = []
    if set_clauses:
        parts.append("SET " + ", ".join(set_clauses))
    if remove_clauses:
        parts.append("REMOVE " + ", ".join(remove_clauses))
    request: dict[str, Any] = {
        "TableName": table_name,
        "Key": dict(key),
        "UpdateExpression": " ".join(parts),
        "ExpressionAttributeNames": names,
        "ReturnValues": "UPDATED_NEW",
        "ReturnConsumedCapacity": "TOTAL",
    }
    if values:
        request["ExpressionAttributeValues"] = values
    if conditions:
        request["ConditionExpression"] = " AND ".join(conditions)
    return request


def consumed_units(consumed: Any) -> float:
    if not consumed:
        return 0.0
    if isinstance(consumed, Mapping):
        return float(consumed.get("CapacityUnits") or 0.0)
    return sum(consumed_units(row) for row in consumed)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return exc.__class__.__name__


def _error_detail(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or _error_code(exc))[:256]
    return str(exc)[:256]
