"""Error taxonomy and write-path outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class IndexViolationError(RuntimeError):
    """Stable error surfaced with an upper-case reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class ConfigError(IndexViolationError):
    """Invalid or missing option; fatal before any worker starts."""


class InputShapeError(IndexViolationError):
    """Correction input that does not have the expected shape."""


class BackendError(IndexViolationError):
    """Remote store failure that terminates the run."""


class WriteKind(str, Enum):
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"
    CONDITIONAL_CHECK_FAILED = "CONDITIONAL_CHECK_FAILED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class WriteOutcome:
    kind: WriteKind
    message: str | None = None
    consumed_capacity: float = 0.0

    @property
    def applied(self) -> bool:
        return self.kind is WriteKind.APPLIED


def reason_code(exc: Exception) -> str:
    if isinstance(exc, IndexViolationError):
        return exc.code
    text = str(exc or "").strip()
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
