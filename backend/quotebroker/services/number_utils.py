import math
from typing import Any


def safe_number(value: Any, default: float = 0.0) -> float:
    """Coerce an upstream value to a finite float; None, NaN, infinities and garbage give default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default
