"""Lightweight validation helpers."""

from typing import Any


def ensure_present(value: Any, field: str) -> None:
    """Raise ValueError if value is falsy."""
    if value in (None, "", []):
        raise ValueError(f"{field} is required")


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Bound a score to [low, high]."""
    return max(low, min(high, value))
