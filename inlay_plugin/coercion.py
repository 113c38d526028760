"""Lenient conversion of stored setting values.

EDMC's config and the JSON shadow file both hand back whatever was written,
so numbers may arrive as strings and flags as ``"yes"``/``"0"``. Anything
that cannot be read falls back to the caller's default.
"""
from __future__ import annotations

from typing import Any, Optional, TypeVar

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})

_Number = TypeVar("_Number", int, float)


def as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, (bool, int, float)):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return default


def _clamp(value: _Number, minimum: Optional[_Number], maximum: Optional[_Number]) -> _Number:
    if minimum is not None and value < minimum:
        return minimum
    if maximum is not None and value > maximum:
        return maximum
    return value


def as_int(value: Any, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Read an integer, clamping both parsed values and the fallback."""

    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return _clamp(parsed, minimum, maximum)


def as_float(
    value: Any,
    default: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    if parsed != parsed:  # NaN
        parsed = default
    return _clamp(parsed, minimum, maximum)
