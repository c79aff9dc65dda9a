"""Envelope encoding for durable values.

Every value is stored as the compact JSON of an `Envelope`. Reads are
tolerant: records that are not envelopes (written before envelopes existed)
come back as raw JSON, or as the raw string when they are not JSON at all.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Set

from pydantic import ValidationError

from .errors import DeserializationError, SerializationError
from .models import Envelope


logger = logging.getLogger(__name__)


class _Missing:
    """Marker for "no value"; distinct from None, which stores as JSON null."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def _dumps(value: Any) -> str:
    # Strict JSON: no NaN/Infinity, compact separators
    return json.dumps(value, separators=(",", ":"), allow_nan=False)


def _check_keys(value: Any, seen: Optional[Set[int]] = None) -> None:
    # json.dumps would silently stringify non-str keys (1 -> "1", None -> "null")
    if not isinstance(value, (dict, list, tuple)):
        return
    seen = set() if seen is None else seen
    if id(value) in seen:
        return  # cycle; rejected by json.dumps
    seen.add(id(value))
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"object keys must be strings, got {type(key).__name__}")
            _check_keys(item, seen)
    else:
        for item in value:
            _check_keys(item, seen)


def is_serializable(value: Any) -> bool:
    """True when `value` survives structural JSON encoding unchanged.

    Rejects cycles, NaN/inf, foreign types and non-string object keys.
    """
    if value is MISSING:
        return False
    try:
        _check_keys(value)
        _dumps(value)
    except (TypeError, ValueError, RecursionError):
        return False
    return True


def serialize(value: Any, *, schema_version: str, timestamp: int) -> str:
    """Wrap `value` in an envelope and encode it.

    Raises SerializationError for MISSING, cyclic structures, NaN/inf,
    non-string object keys and objects JSON cannot represent.
    """
    if value is MISSING:
        raise SerializationError("Cannot serialize a missing value")
    try:
        _check_keys(value)
        payload = _dumps(
            {
                "type": json_type_name(value),
                "value": value,
                "timestamp": timestamp,
                "schemaVersion": schema_version,
            }
        )
    except (TypeError, ValueError, RecursionError) as ex:
        raise SerializationError(f"Failed to serialize value: {ex}") from ex
    return payload


def decode_envelope(raw: str) -> Optional[Envelope]:
    """Return the envelope in `raw`, or None when `raw` is not an envelope."""
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict) or "value" not in parsed or "timestamp" not in parsed:
        return None
    try:
        return Envelope.model_validate(parsed)
    except ValidationError:
        return None


def deserialize(raw: Optional[str], *, schema_version: Optional[str] = None) -> Any:
    """Decode a stored record into its value.

    - None or "" -> None
    - envelope -> envelope value (a schema version mismatch is only logged)
    - other JSON -> the parsed JSON
    - anything else -> the raw string
    Raises DeserializationError when `raw` is not a string.
    """
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise DeserializationError(f"Stored record must be a string, got {type(raw).__name__}")

    env = decode_envelope(raw)
    if env is not None:
        if schema_version and env.schema_version and env.schema_version != schema_version:
            logger.warning(
                "Data schema version mismatch: %s vs %s", env.schema_version, schema_version
            )
        return env.value

    stripped = raw.lstrip()
    if stripped.startswith("{") or stripped.startswith("["):
        try:
            return json.loads(raw)
        except ValueError as ex:
            raise DeserializationError("Corrupt JSON record") from ex
    try:
        return json.loads(raw)
    except ValueError:
        return raw


__all__ = [
    "MISSING",
    "json_type_name",
    "is_serializable",
    "serialize",
    "deserialize",
    "decode_envelope",
]
