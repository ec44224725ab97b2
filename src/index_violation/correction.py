"""Replay a violation report against the table: update, delete or skip each record."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
from typing import Any, Sequence

from .attributes import AttributeValue, parse_plain_string, parse_typed_string
from .config import AuditConfig, IndexKey
from .errors import InputShapeError, WriteKind, WriteOutcome
from .rate_limit import RateLimiter
from .records import (
    DELETE_BLANK_NO,
    DELETE_BLANK_YES,
    GSI_CORRECTION_DELETE_BLANK,
    GSI_VALUE_UPDATE_ERROR,
    ROLE_COLUMNS,
    TABLE_HASH_KEY,
    TABLE_RANGE_KEY,
    KeyRole,
)
from .report import CorrectionFileReader, CorrectionRow, ViolationReportWriter
from .storage import S3Transfer, is_s3_path, staging_path
from .table import (
    AttributeEdit,
    DynamoTable,
    EditAction,
    TableSchema,
    build_dynamodb_client,
    describe_table,
)
from .writer import BatchWriteBuffer

logger = logging.getLogger("index_violation.correction")


class CorrectionMode(str, Enum):
    UPDATE = "update"
    DELETE = "delete"


class Directive(str, Enum):
    DELETE = "DELETE"
    UPDATE = "UPDATE"
    NO_OP = "NO_OP"


@dataclass(frozen=True)
class CorrectionPlan:
    directive: Directive
    key: dict[str, AttributeValue]
    edits: tuple[AttributeEdit, ...] = ()
    expected: dict[str, AttributeValue] | None = None


@dataclass(frozen=True)
class CorrectionResult:
    directive: Directive | None
    outcome: WriteOutcome


@dataclass(frozen=True)
class CorrectionSummary:
    violation_update_requests: int = 0
    successful_updates: int = 0
    items_deleted: int = 0
    conditional_update_failures: int = 0
    unexpected_errors: int = 0
    failure_report_path: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "violation_update_requests": self.violation_update_requests,
            "successful_updates": self.successful_updates,
            "items_deleted": self.items_deleted,
            "conditional_update_failures": self.conditional_update_failures,
            "unexpected_errors": self.unexpected_errors,
            "failure_report_path": self.failure_report_path,
        }


def parse_delete_flag(text: str | None) -> bool:
    """Blank reads as N; anything but Y or N is rejected."""
    if text is None or not text.strip():
        return False
    value = text.strip()
    if value == DELETE_BLANK_YES:
        return True
    if value == DELETE_BLANK_NO:
        return False
    raise InputShapeError(
        "DELETE_BLANK_FLAG_INVALID",
        f"{GSI_CORRECTION_DELETE_BLANK} accepts {DELETE_BLANK_YES} or {DELETE_BLANK_NO}, found {value!r}",
    )


_UPDATE_STAGE_CODES = frozenset({"UPDATE_VALUE_INVALID", "GSI_VALUE_MISSING"})


class CorrectionEngine:
    """Turns one correction row into a delete, an update or nothing.

    Deletes go through the batch buffer and are only sent on flush; updates
    are issued immediately and paced by the write limiter.
    """

    def __init__(
        self,
        table: DynamoTable,
        *,
        index_keys: Sequence[tuple[KeyRole, IndexKey]],
        header: Sequence[str],
        delete_buffer: BatchWriteBuffer,
        write_limiter: RateLimiter | None = None,
        delete_item_when_blank: bool = True,
    ) -> None:
        self.table = table
        self.index_keys = list(index_keys)
        self.header = list(header)
        self.delete_buffer = delete_buffer
        self.write_limiter = write_limiter
        self.delete_item_when_blank = delete_item_when_blank

    @property
    def schema(self) -> TableSchema:
        return self.table.schema

    def eligible(self, role: KeyRole, row: CorrectionRow) -> bool:
        column = ROLE_COLUMNS[role].violation_type
        if column not in self.header:
            return True
        return row.get(column) is not None

    def plan(self, row: CorrectionRow, use_conditional: bool = False) -> CorrectionPlan:
        key = self.schema.primary_key_from_strings(row.get(TABLE_HASH_KEY), row.get(TABLE_RANGE_KEY))
        delete_blank = parse_delete_flag(row.get(GSI_CORRECTION_DELETE_BLANK))
        update_values = {role: row.get(ROLE_COLUMNS[role].update_value) for role, _ in self.index_keys}
        if delete_blank and self.delete_item_when_blank and not any(update_values.values()):
            return CorrectionPlan(Directive.DELETE, key)

        edits: list[AttributeEdit] = []
        edited_roles: list[KeyRole] = []
        for role, index_key in self.index_keys:
            if not self.eligible(role, row):
                continue
            text = update_values[role]
            if text is not None:
                try:
                    value = parse_plain_string(index_key.type, text)
                except InputShapeError as exc:
                    raise InputShapeError("UPDATE_VALUE_INVALID", f"{role.value}: {exc.detail or exc.code}") from exc
                edits.append(AttributeEdit(index_key.name, EditAction.PUT, value))
            elif delete_blank:
                edits.append(AttributeEdit(index_key.name, EditAction.DELETE))
            else:
                continue
            edited_roles.append(role)
        if not edits:
            return CorrectionPlan(Directive.NO_OP, key)

        expected = None
        if use_conditional:
            expected = {}
            for role, edit in zip(edited_roles, edits):
                recorded = row.get(ROLE_COLUMNS[role].value)
                if recorded is None:
                    raise InputShapeError(
                        "GSI_VALUE_MISSING",
                        f"{ROLE_COLUMNS[role].value} is required for conditional update",
                    )
                expected[edit.name] = parse_typed_string(recorded)
        return CorrectionPlan(Directive.UPDATE, key, tuple(edits), expected)

    def apply(self, row: CorrectionRow, use_conditional: bool = False) -> CorrectionResult:
        try:
            plan = self.plan(row, use_conditional)
        except InputShapeError as exc:
            # failures raised while forming the edits still count as update requests
            directive = Directive.UPDATE if exc.code in _UPDATE_STAGE_CODES else None
            return CorrectionResult(directive, WriteOutcome(WriteKind.FAILED, str(exc)))
        if plan.directive is Directive.NO_OP:
            return CorrectionResult(Directive.NO_OP, WriteOutcome(WriteKind.SKIPPED))
        if plan.directive is Directive.DELETE:
            self.delete_buffer.add_delete(plan.key)
            return CorrectionResult(Directive.DELETE, WriteOutcome(WriteKind.APPLIED, "delete queued"))
        outcome = self.table.update(plan.key, plan.edits, plan.expected)
        if self.write_limiter is not None:
            self.write_limiter.consume(outcome.consumed_capacity)
        return CorrectionResult(Directive.UPDATE, outcome)


class ViolationCorrection:
    def __init__(self, config: AuditConfig, client: Any | None = None, *, s3: S3Transfer | None = None) -> None:
        self.config = config
        self._client = client
        self._s3 = s3

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = build_dynamodb_client(self.config)
        return self._client

    def update_from_file(self, *, use_conditional: bool = False) -> CorrectionSummary:
        return self.run(CorrectionMode.UPDATE, use_conditional=use_conditional)

    def delete_from_file(self) -> CorrectionSummary:
        return self.run(CorrectionMode.DELETE)

    def run(self, mode: CorrectionMode, *, use_conditional: bool = False) -> CorrectionSummary:
        config = self.config
        settings = config.correction
        if not settings.input_path:
            raise InputShapeError("CORRECTION_INPUT_MISSING", "correction.input_path is required")
        schema = describe_table(self.client, config.table_name)
        schema.validate_index_keys(config.index_keys())
        table = DynamoTable(self.client, schema)
        input_path = self._local_input(settings.input_path)

        write_limiter = None
        if not config.local:
            write_limiter = RateLimiter(schema.write_capacity_units, config.read_write_percent, 1)
        buffer = BatchWriteBuffer(table, write_limiter, label="correction")
        failures = _FailureReport(settings.output_path)
        logger.info(
            "Violation correction start table=%s mode=%s conditional=%s input=%s",
            schema.table_name,
            mode.value,
            use_conditional,
            settings.input_path,
        )

        requests = 0
        successful = 0
        conditional_failures = 0
        unexpected = 0
        with CorrectionFileReader(input_path) as reader:
            _check_header(reader, schema, config, mode, use_conditional)
            failures.header = reader.header
            if mode is CorrectionMode.DELETE:
                for row in reader:
                    try:
                        key = schema.primary_key_from_strings(row.get(TABLE_HASH_KEY), row.get(TABLE_RANGE_KEY))
                    except InputShapeError as exc:
                        logger.warning("Skipping correction line=%s reason=%s", row.line_number, exc.code)
                        continue
                    requests += 1
                    buffer.add_delete(key)
            else:
                engine = CorrectionEngine(
                    table,
                    index_keys=[(KeyRole(role), key) for role, key in config.index_keys()],
                    header=reader.header,
                    delete_buffer=buffer,
                    write_limiter=write_limiter,
                    delete_item_when_blank=settings.delete_item_when_blank,
                )
                for row in reader:
                    result = engine.apply(row, use_conditional)
                    if result.directive in (Directive.UPDATE, Directive.DELETE):
                        requests += 1
                    kind = result.outcome.kind
                    if kind is WriteKind.APPLIED and result.directive is Directive.UPDATE:
                        successful += 1
                    elif kind is WriteKind.CONDITIONAL_CHECK_FAILED:
                        conditional_failures += 1
                        failures.append(row, result.outcome.message or kind.value)
                    elif kind is WriteKind.FAILED:
                        unexpected += 1
                        logger.warning(
                            "Correction failed line=%s error=%s",
                            row.line_number,
                            result.outcome.message,
                        )
                        failures.append(row, result.outcome.message or kind.value)
        buffer.flush()
        failure_path = failures.close()
        if failure_path is not None and is_s3_path(settings.output_path):
            failure_path = self._transfer().upload(Path(failure_path), settings.output_path)

        summary = CorrectionSummary(
            violation_update_requests=requests,
            successful_updates=successful,
            items_deleted=buffer.total_deleted,
            conditional_update_failures=conditional_failures,
            unexpected_errors=unexpected,
            failure_report_path=failure_path,
        )
        logger.info(
            "Violation correction complete table=%s requests=%s updated=%s deleted=%s "
            "conditional_failures=%s unexpected_errors=%s",
            schema.table_name,
            summary.violation_update_requests,
            summary.successful_updates,
            summary.items_deleted,
            summary.conditional_update_failures,
            summary.unexpected_errors,
        )
        if failure_path is not None:
            logger.warning("Correction failures written to %s", failure_path)
        return summary

    def _local_input(self, input_path: str) -> Path:
        if not is_s3_path(input_path):
            return Path(input_path)
        return self._transfer().download(input_path, staging_path(Path(input_path).name or "correction_input.csv"))

    def _transfer(self) -> S3Transfer:
        if self._s3 is None:
            self._s3 = S3Transfer(region=self.config.region, profile=self.config.aws_profile)
        return self._s3


class _FailureReport:
    """Failure sink created on the first failed record."""

    def __init__(self, output_path: str) -> None:
        self.output_path = output_path
        self.header: list[str] = []
        self._writer: ViolationReportWriter | None = None
        self._local: Path | None = None

    def append(self, row: CorrectionRow, message: str) -> None:
        if self._writer is None:
            if is_s3_path(self.output_path):
                self._local = staging_path(Path(self.output_path).name or "violation_update_errors.csv")
            else:
                self._local = Path(self.output_path)
            self._writer = ViolationReportWriter(self._local, [*self.header, GSI_VALUE_UPDATE_ERROR])
        values = (list(row.values) + [""] * len(self.header))[: len(self.header)]
        self._writer.append([*values, message])

    def close(self) -> str | None:
        if self._writer is None:
            return None
        self._writer.close()
        return str(self._local)


def _check_header(
    reader: CorrectionFileReader,
    schema: TableSchema,
    config: AuditConfig,
    mode: CorrectionMode,
    use_conditional: bool,
) -> None:
    if not reader.has_column(TABLE_HASH_KEY):
        raise InputShapeError("CORRECTION_HEADER_INVALID", f"missing column {TABLE_HASH_KEY!r}")
    if schema.has_range_key and not reader.has_column(TABLE_RANGE_KEY):
        raise InputShapeError("CORRECTION_HEADER_INVALID", f"missing column {TABLE_RANGE_KEY!r}")
    if not schema.has_range_key and reader.has_column(TABLE_RANGE_KEY):
        raise InputShapeError(
            "CORRECTION_HEADER_INVALID",
            f"column {TABLE_RANGE_KEY!r} present but table {schema.table_name} has no range key",
        )
    if mode is CorrectionMode.UPDATE and use_conditional:
        for role, _ in config.index_keys():
            column = ROLE_COLUMNS[KeyRole(role)].value
            if not reader.has_column(column):
                raise InputShapeError("CORRECTION_HEADER_INVALID", f"conditional update requires column {column!r}")
