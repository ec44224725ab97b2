from __future__ import annotations

import copy
import json
from pathlib import Path
import shutil
import threading
import zlib
from typing import Any, Callable

import pytest
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError

from index_violation.config import AuditConfig, build_config


class FakeDynamoDB:
    """In-memory stand-in for the low-level DynamoDB client.

    Items are assigned to scan segments by a stable hash of their key, and
    pages resume strictly after the last evaluated key, so deleting items
    mid-scan does not shift the remaining pages.
    """

    def __init__(
        self,
        *,
        table_name: str = "orders",
        hash_key: tuple[str, str] = ("pk", "S"),
        range_key: tuple[str, str] | None = None,
        read_capacity: int = 100,
        write_capacity: int = 100,
        indexes: tuple[str, ...] = (),
        page_size: int = 10,
    ) -> None:
        self.table_name = table_name
        self.hash_key = hash_key
        self.range_key = range_key
        self.read_capacity = read_capacity
        self.write_capacity = write_capacity
        self.indexes = indexes
        self.page_size = page_size
        self.items: dict[str, dict[str, Any]] = {}
        self.scan_calls: list[dict[str, Any]] = []
        self.batch_calls: list[dict[str, Any]] = []
        self.update_calls: list[dict[str, Any]] = []
        self.unprocessed_per_batch = 0
        self.describe_error: str | None = None
        self.describe_exception: Exception | None = None
        self.update_error: str | None = None
        self._lock = threading.Lock()

    def key_of(self, item: dict[str, Any]) -> dict[str, Any]:
        key = {self.hash_key[0]: item[self.hash_key[0]]}
        if self.range_key:
            key[self.range_key[0]] = item[self.range_key[0]]
        return key

    def put(self, item: dict[str, Any]) -> None:
        self.items[_sort_key(self.key_of(item))] = copy.deepcopy(item)

    def get(self, key: dict[str, Any]) -> dict[str, Any] | None:
        return self.items.get(_sort_key(key))

    def describe_table(self, TableName: str) -> dict[str, Any]:
        if self.describe_exception is not None:
            raise self.describe_exception
        if self.describe_error:
            raise ClientError({"Error": {"Code": self.describe_error, "Message": "describe failed"}}, "DescribeTable")
        if TableName != self.table_name:
            raise ClientError(
                {"Error": {"Code": "ResourceNotFoundException", "Message": "Requested resource not found"}},
                "DescribeTable",
            )
        key_schema = [{"AttributeName": self.hash_key[0], "KeyType": "HASH"}]
        definitions = [{"AttributeName": self.hash_key[0], "AttributeType": self.hash_key[1]}]
        if self.range_key:
            key_schema.append({"AttributeName": self.range_key[0], "KeyType": "RANGE"})
            definitions.append({"AttributeName": self.range_key[0], "AttributeType": self.range_key[1]})
        table: dict[str, Any] = {
            "TableName": self.table_name,
            "KeySchema": key_schema,
            "AttributeDefinitions": definitions,
            "ProvisionedThroughput": {
                "ReadCapacityUnits": self.read_capacity,
                "WriteCapacityUnits": self.write_capacity,
            },
        }
        if self.indexes:
            table["GlobalSecondaryIndexes"] = [{"IndexName": name} for name in self.indexes]
        return {"Table": table}

    def scan(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self.scan_calls.append(copy.deepcopy(kwargs))
            segment = kwargs.get("Segment", 0)
            total = kwargs.get("TotalSegments", 1)
            start = kwargs.get("ExclusiveStartKey")
            start_key = _sort_key(start) if start else None
            names = kwargs.get("ExpressionAttributeNames") or {}
            tokens = [token.strip() for token in kwargs.get("ProjectionExpression", "").split(",") if token.strip()]
            projection = [names.get(token, token) for token in tokens]
            candidates = [
                sort_key
                for sort_key in sorted(self.items)
                if zlib.crc32(sort_key.encode("utf-8")) % total == segment
                and (start_key is None or sort_key > start_key)
            ]
            page = candidates[: self.page_size]
            items = []
            for sort_key in page:
                item = self.items[sort_key]
                if projection:
                    item = {name: value for name, value in item.items() if name in projection}
                items.append(copy.deepcopy(item))
            response: dict[str, Any] = {
                "Items": items,
                "Count": len(items),
                "ConsumedCapacity": {"TableName": self.table_name, "CapacityUnits": 0.5 * len(items)},
            }
            if len(candidates) > len(page):
                response["LastEvaluatedKey"] = self.key_of(self.items[page[-1]])
            return response

    def batch_write_item(self, RequestItems: dict[str, Any], ReturnConsumedCapacity: str | None = None) -> dict[str, Any]:
        with self._lock:
            requests = RequestItems[self.table_name]
            self.batch_calls.append(copy.deepcopy(RequestItems))
            if len(requests) > 25:
                raise ClientError(
                    {"Error": {"Code": "ValidationException", "Message": "Too many items requested"}},
                    "BatchWriteItem",
                )
            unprocessed = requests[: self.unprocessed_per_batch]
            for request in requests[self.unprocessed_per_batch :]:
                self.items.pop(_sort_key(request["DeleteRequest"]["Key"]), None)
            response: dict[str, Any] = {
                "UnprocessedItems": {self.table_name: unprocessed} if unprocessed else {},
                "ConsumedCapacity": [{"TableName": self.table_name, "CapacityUnits": float(len(requests))}],
            }
            return response

    def update_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self.update_calls.append(copy.deepcopy(kwargs))
            if self.update_error:
                raise ClientError({"Error": {"Code": self.update_error, "Message": "update failed"}}, "UpdateItem")
            key = kwargs["Key"]
            names = kwargs.get("ExpressionAttributeNames") or {}
            values = kwargs.get("ExpressionAttributeValues") or {}
            current = self.items.get(_sort_key(key)) or copy.deepcopy(dict(key))
            condition = kwargs.get("ConditionExpression")
            if condition:
                for clause in condition.split(" AND "):
                    alias, ref = [token.strip() for token in clause.split("=")]
                    if current.get(names[alias]) != values[ref]:
                        raise ClientError(
                            {
                                "Error": {
                                    "Code": "ConditionalCheckFailedException",
                                    "Message": "The conditional request failed",
                                }
                            },
                            "UpdateItem",
                        )
            set_part, _, remove_part = kwargs["UpdateExpression"].partition("REMOVE ")
            set_part = set_part.strip()
            if set_part.startswith("SET "):
                for clause in set_part[4:].split(","):
                    alias, ref = [token.strip() for token in clause.split("=")]
                    current[names[alias]] = copy.deepcopy(values[ref])
            for alias in remove_part.split(","):
                if alias.strip():
                    current.pop(names[alias.strip()], None)
            self.items[_sort_key(key)] = current
            return {"Attributes": {}, "ConsumedCapacity": {"TableName": self.table_name, "CapacityUnits": 1.0}}


class FakeS3:
    """Object store backed by a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.uploads: list[tuple[str, str]] = []
        self.missing_buckets: set[str] = set()

    def _path(self, bucket: str, key: str) -> Path:
        return self.root / bucket / key

    def put_text(self, bucket: str, key: str, text: str) -> None:
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def read_text(self, bucket: str, key: str) -> str:
        return self._path(bucket, key).read_text(encoding="utf-8")

    def download_file(self, Bucket: str, Key: str, Filename: str) -> None:
        path = self._path(Bucket, Key)
        if not path.exists():
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        shutil.copyfile(path, Filename)

    def upload_file(self, Filename: str, Bucket: str, Key: str) -> None:
        if Bucket in self.missing_buckets:
            # boto3 wraps the put_object ClientError in its own type
            raise S3UploadFailedError(f"Failed to upload {Filename} to {Bucket}/{Key}: NoSuchBucket")
        path = self._path(Bucket, Key)
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(Filename, path)
        self.uploads.append((Bucket, Key))


def _sort_key(key: dict[str, Any]) -> str:
    return json.dumps(key, sort_keys=True, default=lambda raw: raw.decode("latin-1"))


@pytest.fixture
def fake_dynamodb() -> FakeDynamoDB:
    return FakeDynamoDB()


@pytest.fixture
def fake_dynamodb_factory() -> Callable[..., FakeDynamoDB]:
    return FakeDynamoDB


@pytest.fixture
def fake_s3(tmp_path: Path) -> FakeS3:
    return FakeS3(tmp_path / "s3")


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AuditConfig]:
    """Build a local-mode profile; keyword arguments override whole sections."""

    def _make(**sections: Any) -> AuditConfig:
        payload: dict[str, Any] = {
            "aws": {"region": "us-east-1", "local": True},
            "table": {"name": "orders"},
            "index": {"hash_key": {"name": "email", "type": "S"}},
            "throughput": {"read_write_percent": 25},
            "detection": {"output_path": str(tmp_path / "violations.csv"), "segments": 1},
            "correction": {
                "input_path": str(tmp_path / "violations.csv"),
                "output_path": str(tmp_path / "update_errors.csv"),
            },
        }
        payload.update(sections)
        return build_config(payload)

    return _make
