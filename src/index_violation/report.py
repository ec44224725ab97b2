"""CSV report sink and correction file reader."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
import threading
from typing import IO, Iterator, Sequence

from .errors import InputShapeError


class ViolationReportWriter:
    """Append-only CSV sink shared by all scan workers.

    The lock covers a single row write.
    """

    def __init__(self, path: str | Path, header: Sequence[str]) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._handle: IO[str] | None = self.path.open("w", encoding="utf-8", newline="")
        self._writer = csv.writer(self._handle, dialect="excel", lineterminator="\r\n")
        self._writer.writerow(list(header))
        self.rows_written = 0

    def append(self, row: Sequence[str]) -> None:
        with self._lock:
            if self._handle is None:
                raise RuntimeError("REPORT_WRITER_CLOSED")
            self._writer.writerow(list(row))
            self.rows_written += 1

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.flush()
                self._handle.close()
                self._handle = None

    def __enter__(self) -> "ViolationReportWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(frozen=True)
class CorrectionRow:
    line_number: int
    values: list[str]
    by_name: dict[str, str]

    def get(self, column: str) -> str | None:
        """Column value, with blank and absent both mapped to None."""
        value = self.by_name.get(column)
        if value is None or value == "":
            return None
        return value


class CorrectionFileReader:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            self._handle: IO[str] = self.path.open("r", encoding="utf-8", newline="")
        except FileNotFoundError as exc:
            raise InputShapeError("CORRECTION_FILE_MISSING", str(self.path)) from exc
        except OSError as exc:
            raise InputShapeError("CORRECTION_FILE_UNREADABLE", str(self.path)) from exc
        self._reader = csv.reader(self._handle)
        try:
            self.header = [column.strip() for column in next(self._reader)]
        except StopIteration:
            self._handle.close()
            raise InputShapeError("CORRECTION_FILE_EMPTY", str(self.path)) from None

    def has_column(self, column: str) -> bool:
        return column in self.header

    def __iter__(self) -> Iterator[CorrectionRow]:
        for values in self._reader:
            if not values or all(not value.strip() for value in values):
                continue
            by_name = {column: values[index] for index, column in enumerate(self.header) if index < len(values)}
            yield CorrectionRow(line_number=self._reader.line_num, values=list(values), by_name=by_name)

    def close(self) -> None:
        self._handle.close()

    def __enter__(self) -> "CorrectionFileReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
