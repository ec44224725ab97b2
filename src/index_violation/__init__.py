"""Audit and repair candidate secondary-index key values on a live DynamoDB table."""

from .config import AuditConfig, IndexKey, load_config
from .correction import CorrectionSummary, ViolationCorrection
from .detection import DetectionSummary, ViolationDetection
from .errors import BackendError, ConfigError, IndexViolationError, InputShapeError

__all__ = [
    "AuditConfig",
    "BackendError",
    "ConfigError",
    "CorrectionSummary",
    "DetectionSummary",
    "IndexKey",
    "IndexViolationError",
    "InputShapeError",
    "ViolationCorrection",
    "ViolationDetection",
    "load_config",
]
