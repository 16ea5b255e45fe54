"""Shared numeric helpers for price and statistics formatting."""

from __future__ import annotations

import math
from numbers import Integral, Real
from typing import Any

DEFAULT_PRECISION = 12
DEFAULT_DIGITS = 6


def sign(value: float) -> int:
    """Return -1, 0 or 1 following the sign of value."""
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def format_value(value: Any, precision: int = DEFAULT_PRECISION, digits: int = DEFAULT_DIGITS) -> Any:
    """
    Round a float to `precision` significant digits, then to `digits` decimals with halves rounded up.

    Integers, booleans, non-finite floats and non-numeric values pass through unchanged.

    Examples:
    - 0.1 + 0.2 -> 0.3
    - 1234.56789012 -> 1234.56789
    """
    if isinstance(value, (bool, Integral)) or not isinstance(value, Real):
        return value
    value = float(value)
    if not math.isfinite(value):
        return value
    scale = 10 ** digits
    return math.floor(float(f"{value:.{precision}g}") * scale + 0.5) / scale
