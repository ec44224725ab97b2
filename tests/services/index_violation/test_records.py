from __future__ import annotations

from pathlib import Path

import pytest

from index_violation.errors import InputShapeError
from index_violation.records import (
    GSI_CORRECTION_DELETE_BLANK,
    GSI_HASH_KEY,
    GSI_HASH_KEY_UPDATE_VALUE,
    GSI_HASH_KEY_VIOLATION_DESC,
    GSI_HASH_KEY_VIOLATION_TYPE,
    GSI_RANGE_KEY_VIOLATION_TYPE,
    TABLE_HASH_KEY,
    TABLE_RANGE_KEY,
    KeyRole,
    ReportLayout,
    Violation,
    ViolationKind,
    ViolationRecord,
)
from index_violation.report import CorrectionFileReader, ViolationReportWriter


def test_header_for_hash_only_without_values() -> None:
    layout = ReportLayout(table_has_range_key=False, check_hash=True, check_range=False)

    assert layout.header() == [
        TABLE_HASH_KEY,
        GSI_HASH_KEY_VIOLATION_TYPE,
        GSI_HASH_KEY_VIOLATION_DESC,
        GSI_HASH_KEY_UPDATE_VALUE,
        GSI_CORRECTION_DELETE_BLANK,
    ]


def test_header_with_range_key_and_values() -> None:
    layout = ReportLayout(table_has_range_key=True, check_hash=True, check_range=True, record_index_values=True)

    header = layout.header()

    assert header[:3] == [TABLE_HASH_KEY, TABLE_RANGE_KEY, GSI_HASH_KEY]
    assert GSI_RANGE_KEY_VIOLATION_TYPE in header
    assert header[-1] == GSI_CORRECTION_DELETE_BLANK
    assert len(header) == 2 + 4 + 4 + 1


def test_row_leaves_cells_blank_for_clean_role() -> None:
    layout = ReportLayout(table_has_range_key=True, check_hash=True, check_range=True, record_index_values=True)
    record = ViolationRecord(
        table_hash_key="user-1",
        table_range_key="7",
        range_violation=Violation(
            kind=ViolationKind.TYPE,
            role=KeyRole.RANGE,
            expected_type="N",
            found_type="S",
            value='{"S":"x"}',
        ),
    )

    row = layout.row(record)

    assert len(row) == len(layout.header())
    assert row[:6] == ["user-1", "7", "", "", "", ""]
    assert row[6:10] == ['{"S":"x"}', "Type Violation", "Expected: N Found: S", ""]


def test_layout_needs_a_role() -> None:
    with pytest.raises(ValueError):
        ReportLayout(table_has_range_key=False, check_hash=False, check_range=False)


def test_writer_output_reads_back_through_correction_reader(tmp_path: Path) -> None:
    layout = ReportLayout(table_has_range_key=False, check_hash=True, check_range=False)
    path = tmp_path / "nested" / "report.csv"
    record = ViolationRecord(
        table_hash_key="a,b",
        hash_violation=Violation(kind=ViolationKind.SIZE, role=KeyRole.HASH, expected_type="S", found_size=3000),
    )

    with ViolationReportWriter(path, layout.header()) as writer:
        writer.append(layout.row(record))
    assert writer.rows_written == 1

    with CorrectionFileReader(path) as reader:
        rows = list(reader)
    assert reader.header == layout.header()
    assert len(rows) == 1
    assert rows[0].get(TABLE_HASH_KEY) == "a,b"
    assert rows[0].get(GSI_HASH_KEY_VIOLATION_DESC) == "Max Bytes Allowed: 2048 Found: 3000"
    assert rows[0].get(GSI_HASH_KEY_UPDATE_VALUE) is None


def test_writer_rejects_rows_after_close(tmp_path: Path) -> None:
    writer = ViolationReportWriter(tmp_path / "r.csv", ["a"])
    writer.close()

    with pytest.raises(RuntimeError, match="REPORT_WRITER_CLOSED"):
        writer.append(["x"])


def test_reader_skips_blank_lines(tmp_path: Path) -> None:
    path = tmp_path / "in.csv"
    path.write_text("Table Hash Key,Other\r\n\r\nk1,v\r\n,\r\nk2\r\n", encoding="utf-8")

    with CorrectionFileReader(path) as reader:
        rows = list(reader)

    assert [row.get(TABLE_HASH_KEY) for row in rows] == ["k1", "k2"]
    assert rows[1].get("Other") is None


def test_reader_errors(tmp_path: Path) -> None:
    with pytest.raises(InputShapeError, match="CORRECTION_FILE_MISSING"):
        CorrectionFileReader(tmp_path / "missing.csv")
    empty = tmp_path / "empty.csv"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(InputShapeError, match="CORRECTION_FILE_EMPTY"):
        CorrectionFileReader(empty)
