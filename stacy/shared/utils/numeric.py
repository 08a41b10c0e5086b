"""Numeric helpers for signal normalization."""
import math


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamp a value into [low, high].

    NaN maps to `low` so a corrupt sample can never raise risk.
    """
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, value))
