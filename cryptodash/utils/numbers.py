from __future__ import annotations

import math
from typing import Any

PRICE_DIGITS = 8
QTY_DIGITS = 8
USD_DIGITS = 2
PCT_DIGITS = 2


def round_half_up(value: float, digits: int) -> float:
    """Round with ties toward +infinity, matching the dashboard's display rounding.

    Python's round() is banker's rounding, which would make 0.125 -> 0.12
    while the UI has always shown 0.13.
    """
    p = 10 ** digits
    return math.floor(value * p + 0.5) / p


def to_float(value: Any) -> float:
    """Coerce a stored value to a finite float; anything else becomes 0.0."""
    try:
        n = float(value if value is not None else 0)
    except (TypeError, ValueError):
        return 0.0
    return n if math.isfinite(n) else 0.0


def is_positive_finite(value: Any) -> bool:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(n) and n > 0
