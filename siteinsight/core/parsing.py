"""SiteInsight: Defensive value parsing at the provider boundary."""

import math
from typing import Any


def safe_float(value: Any) -> float:
    """Safely convert a value to float; missing, non-numeric and NaN become 0."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def safe_int(value: Any) -> int:
    """Safely convert a value to int; GA4 sends counts as strings."""
    return int(safe_float(value))
