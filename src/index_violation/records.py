"""Violation records and the tabular report layout."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TABLE_HASH_KEY = "Table Hash Key"
TABLE_RANGE_KEY = "Table Range Key"
GSI_HASH_KEY = "GSI Hash Key Value"
GSI_HASH_KEY_VIOLATION_TYPE = "GSI Hash Key Violation Type"
GSI_HASH_KEY_VIOLATION_DESC = "GSI Hash Key Violation Description"
GSI_HASH_KEY_UPDATE_VALUE = "GSI Hash Key Update Value(FOR USER)"
GSI_RANGE_KEY = "GSI Range Key Value"
GSI_RANGE_KEY_VIOLATION_TYPE = "GSI Range Key Violation Type"
GSI_RANGE_KEY_VIOLATION_DESC = "GSI Range Key Violation Description"
GSI_RANGE_KEY_UPDATE_VALUE = "GSI Range Key Update Value(FOR USER)"
GSI_CORRECTION_DELETE_BLANK = "Delete Blank Attributes When Updating?(Y/N)"
GSI_VALUE_UPDATE_ERROR = "Error While Updating Value"

DELETE_BLANK_YES = "Y"
DELETE_BLANK_NO = "N"


class KeyRole(str, Enum):
    HASH = "HASH"
    RANGE = "RANGE"

    @property
    def max_size(self) -> int:
        return MAX_HASH_KEY_SIZE if self is KeyRole.HASH else MAX_RANGE_KEY_SIZE


MAX_HASH_KEY_SIZE = 2048
MAX_RANGE_KEY_SIZE = 1024


class ViolationKind(str, Enum):
    SIZE = "Size Violation"
    TYPE = "Type Violation"


@dataclass(frozen=True)
class RoleColumns:
    value: str
    violation_type: str
    violation_desc: str
    update_value: str


ROLE_COLUMNS: dict[KeyRole, RoleColumns] = {
    KeyRole.HASH: RoleColumns(
        value=GSI_HASH_KEY,
        violation_type=GSI_HASH_KEY_VIOLATION_TYPE,
        violation_desc=GSI_HASH_KEY_VIOLATION_DESC,
        update_value=GSI_HASH_KEY_UPDATE_VALUE,
    ),
    KeyRole.RANGE: RoleColumns(
        value=GSI_RANGE_KEY,
        violation_type=GSI_RANGE_KEY_VIOLATION_TYPE,
        violation_desc=GSI_RANGE_KEY_VIOLATION_DESC,
        update_value=GSI_RANGE_KEY_UPDATE_VALUE,
    ),
}


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    role: KeyRole
    expected_type: str
    found_type: str | None = None
    found_size: int | None = None
    value: str | None = None

    @property
    def description(self) -> str:
        if self.kind is ViolationKind.SIZE:
            return f"Max Bytes Allowed: {self.role.max_size} Found: {self.found_size}"
        return f"Expected: {self.expected_type} Found: {self.found_type}"


@dataclass(frozen=True)
class ViolationRecord:
    """One offending item: its table key plus up to one finding per role."""

    table_hash_key: str | None
    table_range_key: str | None = None
    hash_violation: Violation | None = None
    range_violation: Violation | None = None
    hash_update_value: str = ""
    range_update_value: str = ""
    delete_blank: str = ""

    def violation_for(self, role: KeyRole) -> Violation | None:
        return self.hash_violation if role is KeyRole.HASH else self.range_violation

    def update_value_for(self, role: KeyRole) -> str:
        return self.hash_update_value if role is KeyRole.HASH else self.range_update_value


@dataclass(frozen=True)
class ReportLayout:
    table_has_range_key: bool
    check_hash: bool
    check_range: bool
    record_index_values: bool = False

    def __post_init__(self) -> None:
        if not self.check_hash and not self.check_range:
            raise ValueError("report layout needs at least one index key role")

    def roles(self) -> list[KeyRole]:
        roles: list[KeyRole] = []
        if self.check_hash:
            roles.append(KeyRole.HASH)
        if self.check_range:
            roles.append(KeyRole.RANGE)
        return roles

    def header(self) -> list[str]:
        columns = [TABLE_HASH_KEY]
        if self.table_has_range_key:
            columns.append(TABLE_RANGE_KEY)
        for role in self.roles():
            names = ROLE_COLUMNS[role]
            if self.record_index_values:
                columns.append(names.value)
            columns.extend([names.violation_type, names.violation_desc, names.update_value])
        columns.append(GSI_CORRECTION_DELETE_BLANK)
        return columns

    def row(self, record: ViolationRecord) -> list[str]:
        row = [record.table_hash_key or ""]
        if self.table_has_range_key:
            row.append(record.table_range_key or "")
        for role in self.roles():
            violation = record.violation_for(role)
            if violation is None:
                row.extend([""] * (4 if self.record_index_values else 3))
                continue
            if self.record_index_values:
                row.append(violation.value or "")
            row.extend([violation.kind.value, violation.description, record.update_value_for(role)])
        row.append(record.delete_blank)
        return row
