"""Serialization of cached payloads.

Decoding never raises. Every decoder returns either ``Decoded(value)`` or a
``DecodeError``; the access layer turns a DecodeError into delete-and-miss.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, Mapping, Optional, TypeVar, Union

from riverforecast.cache.models import RETURN_PERIOD_YEARS

T = TypeVar("T")

# Older payloads key thresholds as "return_period_<year>"
_LEGACY_YEAR_KEY = re.compile(r"^return_period_(\d+)$")


@dataclass(frozen=True)
class Decoded(Generic[T]):
    value: T


@dataclass(frozen=True)
class DecodeError:
    """Malformed cached payload. Never raised, only returned."""

    reason: str


DecodeResult = Union[Decoded[T], DecodeError]


def encode(value: Any) -> str:
    """Serialize a value to JSON text.

    Raises:
        TypeError: If the value is not JSON-serializable
    """
    return json.dumps(value, separators=(",", ":"))


def encode_optional(value: Optional[Any]) -> Optional[str]:
    return None if value is None else encode(value)


def decode(text: Optional[str]) -> DecodeResult:
    """Parse JSON text."""
    if text is None:
        return DecodeError("payload is NULL")
    try:
        return Decoded(json.loads(text))
    except (TypeError, ValueError) as e:
        return DecodeError(f"invalid JSON: {e}")


def decode_object(text: Optional[str]) -> DecodeResult:
    """Parse JSON text that must hold an object."""
    result = decode(text)
    if isinstance(result, Decoded) and not isinstance(result.value, dict):
        return DecodeError(f"expected object, got {type(result.value).__name__}")
    return result


def normalize_thresholds(data: Mapping) -> dict[int, float]:
    """Map year -> flow from either ``{"2": x}`` or ``{"return_period_2": x}`` keys.

    Keys that are not standard return-period years are ignored, as are null
    values.

    Raises:
        ValueError: If a threshold value is not numeric
    """
    thresholds = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(key, int):
            year = key
        else:
            match = _LEGACY_YEAR_KEY.match(str(key))
            text = match.group(1) if match else str(key)
            if not text.isdigit():
                continue
            year = int(text)
        if year not in RETURN_PERIOD_YEARS:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"threshold for {year}-year is not numeric: {value!r}")
        thresholds[year] = float(value)
    return thresholds


def decode_thresholds(text: Optional[str]) -> DecodeResult:
    """Parse a return-period payload.

    Returns:
        Decoded((thresholds, embedded_unit_tag)). Legacy payloads stored the
        unit inside the JSON document; newer ones leave it to the unit column,
        so the embedded tag is usually None.
    """
    result = decode_object(text)
    if isinstance(result, DecodeError):
        return result
    try:
        thresholds = normalize_thresholds(result.value)
    except ValueError as e:
        return DecodeError(str(e))
    if not thresholds:
        return DecodeError("no return-period thresholds in payload")
    unit_tag = result.value.get("unit")
    if unit_tag is not None and not isinstance(unit_tag, str):
        return DecodeError(f"unit tag is not a string: {unit_tag!r}")
    return Decoded((thresholds, unit_tag))


def encode_thresholds(thresholds: Mapping[int, float]) -> str:
    return encode({str(year): float(v) for year, v in sorted(thresholds.items())})
