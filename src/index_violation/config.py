"""Profile loader for detection and correction runs.

The YAML profile is validated with pydantic section models. Validation
failures surface as :class:`ConfigError` with a stable reason code.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .errors import ConfigError

_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")
_REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+$")

MIN_READ_WRITE_PERCENT = 1
MAX_READ_WRITE_PERCENT = 100
DEFAULT_READ_WRITE_PERCENT = 25
MIN_SEGMENTS = 1
MAX_SEGMENTS = 4096
DEFAULT_DETECTION_OUTPUT_PATH = "./violation_detection.csv"
DEFAULT_CORRECTION_OUTPUT_PATH = "./violation_update_errors.csv"

# pydantic error types that map onto a single reason code
_ERROR_CODES = {
    "greater_than_equal": "OPTION_OUT_OF_RANGE",
    "less_than_equal": "OPTION_OUT_OF_RANGE",
    "int_parsing": "OPTION_NOT_INTEGER",
    "int_type": "OPTION_NOT_INTEGER",
    "int_from_float": "OPTION_NOT_INTEGER",
    "literal_error": "INDEX_KEY_TYPE_INVALID",
    "model_type": "PROFILE_SECTION_INVALID",
    "model_attributes_type": "PROFILE_SECTION_INVALID",
    "extra_forbidden": "PROFILE_FIELD_UNKNOWN",
    "string_type": "OPTION_NOT_TEXT",
}


class ProfileRuleError(ValueError):
    """Raised inside validators; carries the reason code through pydantic."""

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail


@dataclass(frozen=True)
class IndexKey:
    name: str
    type: str


def _strict_bool(value: Any, field_name: str) -> Any:
    if isinstance(value, str):
        token = value.strip().lower()
        if token == "true":
            return True
        if token == "false":
            return False
    if isinstance(value, (bool, type(None))):
        return value
    raise ProfileRuleError("OPTION_NOT_BOOLEAN", f"{field_name} should be 'true' or 'false'")


class AwsSection(BaseModel):
    region: Optional[str] = Field(default=None, validate_default=True, description="AWS region of the table")
    profile: Optional[str] = Field(default=None, description="Named AWS credentials profile")
    endpoint_url: Optional[str] = Field(default=None, description="Override for the DynamoDB endpoint")
    local: bool = Field(default=False, description="Target DynamoDB Local and skip pacing")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("local", mode="before")
    @classmethod
    def _local_flag(cls, value: Any) -> Any:
        return _strict_bool(value, "aws.local")

    @field_validator("region")
    @classmethod
    def _region_or_environment(cls, value: Optional[str]) -> str:
        region = value or os.getenv("AWS_DEFAULT_REGION", "").strip() or os.getenv("AWS_REGION", "").strip()
        if not region:
            raise ProfileRuleError("REGION_MISSING", "aws.region")
        if not _REGION_PATTERN.fullmatch(region):
            raise ProfileRuleError("REGION_INVALID", region)
        return region


class TableSection(BaseModel):
    name: str = ""

    model_config = ConfigDict(extra="forbid", frozen=True, coerce_numbers_to_str=True)


class IndexKeySection(BaseModel):
    name: Optional[str] = None
    type: Optional[Literal["S", "N", "B"]] = None

    model_config = ConfigDict(extra="forbid", frozen=True, coerce_numbers_to_str=True)

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _name_and_type_together(self) -> "IndexKeySection":
        if self.type and not self.name:
            raise ProfileRuleError("INDEX_KEY_NAME_MISSING", "type set while name missing")
        if self.name and not self.type:
            raise ProfileRuleError("INDEX_KEY_TYPE_MISSING", "name set while type missing")
        return self

    def to_key(self) -> IndexKey | None:
        if not self.name or not self.type:
            return None
        return IndexKey(name=self.name, type=self.type)


class IndexSection(BaseModel):
    hash_key: Optional[IndexKeySection] = None
    range_key: Optional[IndexKeySection] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class ThroughputSection(BaseModel):
    read_write_percent: int = Field(
        DEFAULT_READ_WRITE_PERCENT,
        ge=MIN_READ_WRITE_PERCENT,
        le=MAX_READ_WRITE_PERCENT,
        description="Share of provisioned capacity this run may consume",
    )

    model_config = ConfigDict(extra="forbid", frozen=True)


class DetectionSettings(BaseModel):
    record_details: bool = True
    record_index_values: bool = False
    output_path: str = DEFAULT_DETECTION_OUTPUT_PATH
    segments: int = Field(1, ge=MIN_SEGMENTS, le=MAX_SEGMENTS, description="Parallel scan segments")
    max_violations: Optional[int] = Field(None, description="Stop after this many violations; -1 is unbounded")
    max_items: Optional[int] = Field(None, description="Stop after this many items; -1 is unbounded")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("record_details", "record_index_values", mode="before")
    @classmethod
    def _flags(cls, value: Any, info: ValidationInfo) -> Any:
        return _strict_bool(value, f"detection.{info.field_name}")

    @field_validator("max_violations", "max_items")
    @classmethod
    def _limit(cls, value: Optional[int], info: ValidationInfo) -> Optional[int]:
        # -1 is the historical "unbounded" marker
        if value is None or value == -1:
            return None
        if value <= 0:
            raise ProfileRuleError("OPTION_NOT_POSITIVE", f"detection.{info.field_name} {value} must be positive")
        return value

    @model_validator(mode="after")
    def _record_options(self) -> "DetectionSettings":
        if self.record_index_values and not self.record_details:
            raise ProfileRuleError(
                "RECORD_OPTIONS_CONFLICT",
                "detection.record_index_values set true while detection.record_details is false",
            )
        return self


class CorrectionSettings(BaseModel):
    input_path: Optional[str] = None
    output_path: str = DEFAULT_CORRECTION_OUTPUT_PATH
    delete_item_when_blank: bool = True

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("delete_item_when_blank", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> Any:
        return _strict_bool(value, "correction.delete_item_when_blank")

    @model_validator(mode="after")
    def _distinct_paths(self) -> "CorrectionSettings":
        if self.input_path and self.input_path == self.output_path:
            raise ProfileRuleError(
                "CORRECTION_PATHS_EQUAL", "correction.input_path and correction.output_path cannot be the same"
            )
        return self


class AuditConfig(BaseModel):
    """Validated profile for one table."""

    aws: AwsSection = Field(default_factory=AwsSection)
    table: TableSection = Field(default_factory=TableSection)
    index: IndexSection = Field(default_factory=IndexSection)
    throughput: ThroughputSection = Field(default_factory=ThroughputSection)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    correction: CorrectionSettings = Field(default_factory=CorrectionSettings)
    profile_path: Optional[Path] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _sections_present(cls, values: Any) -> Any:
        # an absent aws section still needs the region fallback to run
        if isinstance(values, dict) and "aws" not in values:
            values = {**values, "aws": {}}
        return values

    @model_validator(mode="after")
    def _cross_section_rules(self) -> "AuditConfig":
        if not self.table.name:
            raise ProfileRuleError("TABLE_NAME_MISSING", "table.name")
        hash_key, range_key = self.hash_key, self.range_key
        if hash_key is None and range_key is None:
            raise ProfileRuleError("INDEX_KEYS_MISSING", "index.hash_key and index.range_key cannot both be absent")
        if hash_key and range_key and hash_key.name == range_key.name:
            raise ProfileRuleError("INDEX_KEYS_EQUAL", "index.hash_key and index.range_key must be different")
        return self

    @property
    def table_name(self) -> str:
        return self.table.name

    @property
    def region(self) -> str:
        return self.aws.region or ""

    @property
    def aws_profile(self) -> str | None:
        return self.aws.profile

    @property
    def endpoint_url(self) -> str | None:
        return self.aws.endpoint_url

    @property
    def local(self) -> bool:
        return self.aws.local

    @property
    def read_write_percent(self) -> int:
        return self.throughput.read_write_percent

    @property
    def hash_key(self) -> IndexKey | None:
        return self.index.hash_key.to_key() if self.index.hash_key else None

    @property
    def range_key(self) -> IndexKey | None:
        return self.index.range_key.to_key() if self.index.range_key else None

    def index_keys(self) -> list[tuple[str, IndexKey]]:
        keys: list[tuple[str, IndexKey]] = []
        if self.hash_key is not None:
            keys.append(("HASH", self.hash_key))
        if self.range_key is not None:
            keys.append(("RANGE", self.range_key))
        return keys


def load_config(profile_path: Path) -> AuditConfig:
    try:
        payload = yaml.safe_load(Path(profile_path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError("PROFILE_MISSING", str(profile_path)) from exc
    except yaml.YAMLError as exc:
        raise ConfigError("PROFILE_INVALID", str(exc)[:256]) from exc
    if not isinstance(payload, Mapping):
        raise ConfigError("PROFILE_INVALID", str(profile_path))
    return build_config(payload, profile_path=Path(profile_path))


def build_config(payload: Mapping[str, Any], *, profile_path: Path | None = None) -> AuditConfig:
    values = _resolve(dict(payload))
    if profile_path is not None:
        values["profile_path"] = profile_path
    try:
        return AuditConfig.model_validate(values)
    except ValidationError as exc:
        raise _config_error(exc) from exc


def _config_error(exc: ValidationError) -> ConfigError:
    error = exc.errors()[0]
    field_name = ".".join(str(part) for part in error.get("loc", ()))
    cause = (error.get("ctx") or {}).get("error")
    if isinstance(cause, ProfileRuleError):
        return ConfigError(cause.code, cause.detail)
    code = _ERROR_CODES.get(error.get("type", ""), "PROFILE_INVALID")
    return ConfigError(code, f"{field_name} {error.get('msg', '')}".strip())


def _resolve(value: Any) -> Any:
    """Expand ${VAR:-default} placeholders and drop blank entries so defaults apply."""
    if isinstance(value, Mapping):
        resolved = {}
        for key, item in value.items():
            item = _resolve(item)
            if item is None:
                continue
            resolved[key] = item
        return resolved
    if isinstance(value, list):
        return [_resolve(item) for item in value]
    if isinstance(value, str):
        text = value.strip()
        match = _ENV_PATTERN.fullmatch(text)
        if match:
            text = os.getenv(match.group(1), match.group(2) or "").strip()
        return text or None
    return value
