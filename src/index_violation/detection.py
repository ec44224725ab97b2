"""Parallel segmented scan that finds index key violations."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
import logging
from pathlib import Path
import threading
import time
from typing import Any, Mapping

from .attributes import AttributeValue
from .config import AuditConfig
from .errors import InputShapeError
from .observability import ScanCounters
from .rate_limit import RateLimiter
from .records import ReportLayout, ViolationRecord
from .report import ViolationReportWriter
from .rules import ViolationChecker
from .storage import S3Transfer, is_s3_path, staging_path
from .table import DynamoTable, build_dynamodb_client, describe_table
from .writer import BatchWriteBuffer

logger = logging.getLogger("index_violation.detection")

PROGRESS_SECONDS = 10.0


@dataclass(frozen=True)
class DetectionSummary:
    items_scanned: int
    violations_found: int
    violations_deleted: int
    segments: int = 1
    report_path: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "items_scanned": self.items_scanned,
            "violations_found": self.violations_found,
            "violations_deleted": self.violations_deleted,
            "segments": self.segments,
            "report_path": self.report_path,
        }


@dataclass(frozen=True)
class SegmentResult:
    segment: int
    pages: int
    items_scanned: int
    violations_found: int
    violations_deleted: int
    stop_reason: str


class SegmentScanner:
    """Scans one segment of the table to completion or until a limit trips.

    Counters and the report sink are shared with the other segments; the
    read limiter and the delete buffer belong to this segment alone.
    """

    def __init__(
        self,
        *,
        table: DynamoTable,
        segment: int,
        total_segments: int,
        attributes: list[str],
        checker: ViolationChecker,
        counters: ScanCounters,
        layout: ReportLayout,
        report: ViolationReportWriter | None = None,
        read_limiter: RateLimiter | None = None,
        delete_buffer: BatchWriteBuffer | None = None,
        max_items: int | None = None,
        max_violations: int | None = None,
        abort: threading.Event | None = None,
    ) -> None:
        self.table = table
        self.segment = segment
        self.total_segments = total_segments
        self.attributes = attributes
        self.checker = checker
        self.counters = counters
        self.layout = layout
        self.report = report
        self.read_limiter = read_limiter
        self.delete_buffer = delete_buffer
        self.max_items = max_items
        self.max_violations = max_violations
        self.abort = abort or threading.Event()

    def limit_reached(self) -> str | None:
        if self.max_items is not None and self.counters.items_scanned.get() >= self.max_items:
            return "max_items"
        if self.max_violations is not None and self.counters.violations_found.get() >= self.max_violations:
            return "max_violations"
        return None

    def run(self) -> SegmentResult:
        pages = 0
        scanned = 0
        found = 0
        deleted = 0
        cursor = None
        stop_reason = "complete"
        last_progress = time.monotonic()
        while True:
            if self.abort.is_set():
                stop_reason = "aborted"
                break
            limit = self.limit_reached()
            if limit:
                stop_reason = limit
                break
            page = self.table.scan_page(
                segment=self.segment,
                total_segments=self.total_segments,
                attributes=self.attributes,
                cursor=cursor,
            )
            pages += 1
            if self.read_limiter is not None:
                self.read_limiter.consume(page.consumed_capacity)
            limit = None
            for item in page.items:
                limit = self.limit_reached()
                if limit:
                    break
                record = self._check(item)
                self.counters.items_scanned.add(1)
                scanned += 1
                if record is not None:
                    found += 1
                    self.counters.violations_found.add(1)
                    if self.report is not None:
                        self.report.append(self.layout.row(record))
                    if self.delete_buffer is not None:
                        accepted = self.delete_buffer.add_delete_for_item(item)
                        deleted += accepted
                        self.counters.violations_deleted.add(accepted)
            if self.delete_buffer is not None:
                accepted = self.delete_buffer.flush()
                deleted += accepted
                self.counters.violations_deleted.add(accepted)
            cursor = page.cursor
            if time.monotonic() - last_progress >= PROGRESS_SECONDS:
                logger.info(
                    "Scan progress segment=%s pages=%s items_scanned=%s violations_found=%s",
                    self.segment,
                    pages,
                    scanned,
                    found,
                )
                last_progress = time.monotonic()
            if limit:
                stop_reason = limit
                break
            if cursor is None:
                break
        logger.info(
            "Scan segment done segment=%s pages=%s items_scanned=%s violations_found=%s deleted=%s reason=%s",
            self.segment,
            pages,
            scanned,
            found,
            deleted,
            stop_reason,
        )
        return SegmentResult(
            segment=self.segment,
            pages=pages,
            items_scanned=scanned,
            violations_found=found,
            violations_deleted=deleted,
            stop_reason=stop_reason,
        )

    def _check(self, item: Mapping[str, AttributeValue]) -> ViolationRecord | None:
        try:
            return self.checker.check_item(item)
        except ValueError as exc:
            raise InputShapeError("TABLE_KEY_INVALID", str(exc)) from exc


class ViolationDetection:
    def __init__(self, config: AuditConfig, client: Any | None = None, *, s3: S3Transfer | None = None) -> None:
        self.config = config
        self._client = client
        self._s3 = s3

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = build_dynamodb_client(self.config)
        return self._client

    def run(self, *, delete: bool = False) -> DetectionSummary:
        config = self.config
        settings = config.detection
        schema = describe_table(self.client, config.table_name)
        schema.validate_index_keys(config.index_keys())
        table = DynamoTable(self.client, schema)
        segments = settings.segments
        logger.info(
            "Violation detection start table=%s segments=%s mode=%s max_items=%s max_violations=%s",
            schema.table_name,
            segments,
            "delete" if delete else "keep",
            settings.max_items if settings.max_items is not None else "all",
            settings.max_violations if settings.max_violations is not None else "all",
        )
        if delete:
            logger.warning("Violations will be deleted from table %s", schema.table_name)

        layout = ReportLayout(
            table_has_range_key=schema.has_range_key,
            check_hash=config.hash_key is not None,
            check_range=config.range_key is not None,
            record_index_values=settings.record_index_values,
        )
        checker = ViolationChecker(
            table_hash_key_name=schema.hash_key_name,
            table_range_key_name=schema.range_key_name,
            hash_key=config.hash_key,
            range_key=config.range_key,
            record_details=settings.record_details,
            record_index_values=settings.record_index_values,
        )
        attributes = schema.projection_attributes(key for _, key in config.index_keys())

        report: ViolationReportWriter | None = None
        local_report: Path | None = None
        if settings.record_details:
            if is_s3_path(settings.output_path):
                local_report = staging_path(Path(settings.output_path).name or "violation_detection.csv")
            else:
                local_report = Path(settings.output_path)
            report = ViolationReportWriter(local_report, layout.header())

        counters = ScanCounters()
        abort = threading.Event()
        scanners = [
            SegmentScanner(
                table=table,
                segment=segment,
                total_segments=segments,
                attributes=attributes,
                checker=checker,
                counters=counters,
                layout=layout,
                report=report,
                read_limiter=self._limiter(schema.read_capacity_units, segments),
                delete_buffer=(
                    BatchWriteBuffer(
                        table,
                        self._limiter(schema.write_capacity_units, segments),
                        label=f"segment={segment}",
                    )
                    if delete
                    else None
                ),
                max_items=settings.max_items,
                max_violations=settings.max_violations,
                abort=abort,
            )
            for segment in range(segments)
        ]
        try:
            if segments == 1:
                scanners[0].run()
            else:
                with ThreadPoolExecutor(max_workers=segments) as executor:
                    futures = {executor.submit(_run_segment, scanner, abort): scanner.segment for scanner in scanners}
                    for future in as_completed(futures):
                        future.result()
        finally:
            if report is not None:
                report.close()

        report_path: str | None = None
        if local_report is not None:
            report_path = str(local_report)
            if is_s3_path(settings.output_path):
                report_path = self._transfer().upload(local_report, settings.output_path)

        totals = counters.snapshot()
        summary = DetectionSummary(
            items_scanned=totals["items_scanned"],
            violations_found=totals["violations_found"],
            violations_deleted=totals["violations_deleted"],
            segments=segments,
            report_path=report_path,
        )
        logger.info(
            "Violation detection complete table=%s items_scanned=%s violations_found=%s violations_deleted=%s report=%s",
            schema.table_name,
            summary.items_scanned,
            summary.violations_found,
            summary.violations_deleted,
            summary.report_path or "-",
        )
        return summary

    def _limiter(self, capacity_units: int, worker_count: int) -> RateLimiter | None:
        if self.config.local:
            return None
        return RateLimiter(capacity_units, self.config.read_write_percent, worker_count)

    def _transfer(self) -> S3Transfer:
        if self._s3 is None:
            self._s3 = S3Transfer(region=self.config.region, profile=self.config.aws_profile)
        return self._s3


def _run_segment(scanner: SegmentScanner, abort: threading.Event) -> SegmentResult:
    try:
        return scanner.run()
    except Exception:
        abort.set()
        raise
