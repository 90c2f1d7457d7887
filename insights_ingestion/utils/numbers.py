"""Lenient numeric parsing for Graph API values (counters arrive as strings)."""

import math
from typing import Any


def to_float(value: Any) -> float:
    """
    Parse a loosely-typed value as float.

    Absent, empty, non-finite or unparseable input becomes 0.0. Strings may
    carry thousands separators ("1,234.50").
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.replace(",", "").strip()
        if not cleaned:
            return 0.0
        try:
            number = float(cleaned)
        except ValueError:
            return 0.0
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_int(value: Any) -> int:
    """Parse a loosely-typed value as int, truncating fractions ("12.0" -> 12)."""
    return int(to_float(value))


def non_negative_int(value: Any) -> int:
    return max(to_int(value), 0)


def non_negative_float(value: Any) -> float:
    return max(to_float(value), 0.0)


def ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    """numerator / denominator * scale, or 0.0 unless denominator is strictly positive."""
    if denominator > 0:
        return numerator / denominator * scale
    return 0.0
