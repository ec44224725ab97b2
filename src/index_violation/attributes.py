"""Codec for DynamoDB low-level attribute values.

Items arrive from the low-level client as ``{name: {tag: payload}}`` maps.
Two string encodings are used in reports:

* plain: the bare payload, used for table primary keys whose type is fixed by
  the table schema;
* typed: a JSON object ``{"<tag>": payload}`` that keeps the type, used for
  recorded index values and conditional-update expectations.

Binary payloads are base64 text in both encodings.
"""

from __future__ import annotations

import base64
import binascii
from decimal import Decimal, InvalidOperation
import json
from typing import Any, Mapping

from .errors import InputShapeError

STRING = "S"
NUMBER = "N"
BINARY = "B"
STRING_SET = "SS"
NUMBER_SET = "NS"
BINARY_SET = "BS"

SCALAR_TYPES: tuple[str, ...] = (STRING, NUMBER, BINARY)
SET_TYPES: tuple[str, ...] = (STRING_SET, NUMBER_SET, BINARY_SET)
KNOWN_TYPES: tuple[str, ...] = SCALAR_TYPES + SET_TYPES

AttributeValue = Mapping[str, Any]


def value_type(value: AttributeValue) -> str | None:
    for tag in KNOWN_TYPES:
        if tag in value:
            return tag
    return None


def is_set_type(tag: str | None) -> bool:
    return tag in SET_TYPES


def payload_size(value: AttributeValue) -> int:
    """Byte length of a string or binary payload."""
    tag = value_type(value)
    if tag == STRING:
        return len(str(value[STRING]).encode("utf-8"))
    if tag == BINARY:
        return len(_as_bytes(value[BINARY]))
    raise ValueError(f"payload size undefined for type {tag}")


def to_plain_string(value: AttributeValue) -> str:
    tag = value_type(value)
    if tag == STRING:
        return str(value[STRING])
    if tag == NUMBER:
        return str(value[NUMBER])
    if tag == BINARY:
        return _b64(value[BINARY])
    if tag in (STRING_SET, NUMBER_SET):
        return json.dumps([str(item) for item in value[tag]], ensure_ascii=True)
    if tag == BINARY_SET:
        return json.dumps([_b64(item) for item in value[BINARY_SET]], ensure_ascii=True)
    raise ValueError("unsupported attribute value")


def to_typed_string(value: AttributeValue) -> str:
    tag = value_type(value)
    if tag in (STRING, NUMBER):
        payload: Any = str(value[tag])
    elif tag == BINARY:
        payload = _b64(value[BINARY])
    elif tag in (STRING_SET, NUMBER_SET):
        payload = [str(item) for item in value[tag]]
    elif tag == BINARY_SET:
        payload = [_b64(item) for item in value[BINARY_SET]]
    else:
        raise ValueError("unsupported attribute value")
    return json.dumps({tag: payload}, ensure_ascii=True, separators=(",", ":"))


def parse_plain_string(tag: str, text: str) -> dict[str, Any]:
    if tag == STRING:
        return {STRING: text}
    if tag == NUMBER:
        return {NUMBER: _number(text)}
    if tag == BINARY:
        return {BINARY: _unb64(text)}
    if tag in SET_TYPES:
        return _set_value(tag, _json_list(text))
    raise InputShapeError("ATTRIBUTE_TYPE_INVALID", tag)


def parse_typed_string(text: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InputShapeError("TYPED_VALUE_MALFORMED", str(text)[:128]) from exc
    if not isinstance(payload, dict) or len(payload) != 1:
        raise InputShapeError("TYPED_VALUE_MALFORMED", str(text)[:128])
    tag, raw = next(iter(payload.items()))
    if tag in SCALAR_TYPES:
        if not isinstance(raw, str):
            raise InputShapeError("TYPED_VALUE_MALFORMED", str(text)[:128])
        return parse_plain_string(tag, raw)
    if tag in SET_TYPES:
        # older reports stored the set as a JSON-encoded string
        items = _json_list(raw) if isinstance(raw, str) else raw
        if not isinstance(items, list):
            raise InputShapeError("TYPED_VALUE_MALFORMED", str(text)[:128])
        return _set_value(tag, items)
    raise InputShapeError("ATTRIBUTE_TYPE_INVALID", str(tag))


def _set_value(tag: str, items: list[Any]) -> dict[str, Any]:
    if tag == BINARY_SET:
        return {tag: [_unb64(str(item)) for item in items]}
    if tag == NUMBER_SET:
        return {tag: [_number(str(item)) for item in items]}
    return {tag: [str(item) for item in items]}


def _json_list(text: str) -> list[Any]:
    try:
        items = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InputShapeError("SET_VALUE_MALFORMED", text[:128]) from exc
    if not isinstance(items, list):
        raise InputShapeError("SET_VALUE_MALFORMED", text[:128])
    return items


def _number(text: str) -> str:
    token = text.strip()
    try:
        parsed = Decimal(token)
    except InvalidOperation as exc:
        raise InputShapeError("NUMBER_VALUE_INVALID", text[:128]) from exc
    if not parsed.is_finite():
        raise InputShapeError("NUMBER_VALUE_INVALID", text[:128])
    return token


def _as_bytes(raw: Any) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, memoryview):
        return raw.tobytes()
    return str(raw).encode("utf-8")


def _b64(raw: Any) -> str:
    return base64.b64encode(_as_bytes(raw)).decode("ascii")


def _unb64(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise InputShapeError("BINARY_VALUE_INVALID", text[:128]) from exc
