"""Violation rules for candidate index key attributes."""

from __future__ import annotations

from typing import Mapping

from .attributes import (
    BINARY,
    SCALAR_TYPES,
    STRING,
    AttributeValue,
    is_set_type,
    payload_size,
    to_plain_string,
    to_typed_string,
    value_type,
)
from .config import IndexKey
from .records import KeyRole, Violation, ViolationKind, ViolationRecord


def check_value(
    value: AttributeValue,
    role: KeyRole,
    expected_type: str,
    *,
    record_value: bool = False,
) -> Violation | None:
    """Return the violation for one present attribute value, if any.

    A type mismatch is reported instead of any size check. Set types never
    satisfy a key attribute. Numbers cannot violate the size ceiling.
    """
    found = value_type(value)
    if found is None:
        return None
    recorded = to_typed_string(value) if record_value else None
    if found != expected_type or is_set_type(found):
        return Violation(
            kind=ViolationKind.TYPE,
            role=role,
            expected_type=expected_type,
            found_type=found,
            value=recorded,
        )
    if found in (STRING, BINARY):
        size = payload_size(value)
        if size > role.max_size:
            return Violation(
                kind=ViolationKind.SIZE,
                role=role,
                expected_type=expected_type,
                found_size=size,
                value=recorded,
            )
    return None


def check(
    item: Mapping[str, AttributeValue],
    role: KeyRole,
    key: IndexKey,
    *,
    record_value: bool = False,
) -> Violation | None:
    # an absent attribute is simply left out of the index
    value = item.get(key.name)
    if value is None:
        return None
    return check_value(value, role, key.type, record_value=record_value)


class ViolationChecker:
    def __init__(
        self,
        *,
        table_hash_key_name: str,
        table_range_key_name: str | None,
        hash_key: IndexKey | None,
        range_key: IndexKey | None,
        record_details: bool = True,
        record_index_values: bool = False,
    ) -> None:
        if hash_key is None and range_key is None:
            raise ValueError("at least one index key must be checked")
        self.table_hash_key_name = table_hash_key_name
        self.table_range_key_name = table_range_key_name
        self.hash_key = hash_key
        self.range_key = range_key
        self.record_details = record_details
        self.record_index_values = record_index_values and record_details

    def check_item(self, item: Mapping[str, AttributeValue]) -> ViolationRecord | None:
        hash_violation = None
        range_violation = None
        if self.hash_key is not None:
            hash_violation = check(item, KeyRole.HASH, self.hash_key, record_value=self.record_index_values)
        if self.range_key is not None:
            range_violation = check(item, KeyRole.RANGE, self.range_key, record_value=self.record_index_values)
        if hash_violation is None and range_violation is None:
            return None
        if not self.record_details:
            return ViolationRecord(table_hash_key=None, hash_violation=hash_violation, range_violation=range_violation)
        return ViolationRecord(
            table_hash_key=_primary_key_string(item, self.table_hash_key_name),
            table_range_key=(
                _primary_key_string(item, self.table_range_key_name) if self.table_range_key_name else None
            ),
            hash_violation=hash_violation,
            range_violation=range_violation,
        )


def _primary_key_string(item: Mapping[str, AttributeValue], name: str) -> str:
    value = item.get(name)
    if value is None:
        raise ValueError(f"item is missing table key attribute {name}")
    if value_type(value) not in SCALAR_TYPES:
        raise ValueError(f"invalid table key {name}, should contain S, N or B only")
    return to_plain_string(value)

