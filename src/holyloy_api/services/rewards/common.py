"""Shared helpers for reward arithmetic and timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps read back from the store as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def require_points(value: object, *, field: str = "points") -> int:
    """Validate a whole, positive point quantity."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be a whole number of points")
    if value <= 0:
        raise ValueError(f"{field} must be positive")
    return value


def require_currency(value: object, *, field: str = "amount") -> Decimal:
    """Validate a positive currency-equivalent amount, rejecting floats."""

    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"{field} must be an integer or Decimal, not {type(value).__name__}")
    if isinstance(value, int):
        value = Decimal(value)
    if not isinstance(value, Decimal):
        raise ValueError(f"{field} must be an integer or Decimal")
    quantized = value.quantize(CENT, rounding=ROUND_DOWN)
    if quantized <= 0:
        raise ValueError(f"{field} must be positive")
    return quantized


def percentage_of(points: int, rate: Decimal) -> Decimal:
    """Exact ``points * rate`` truncated to cents."""

    return (Decimal(points) * rate).quantize(CENT, rounding=ROUND_DOWN)
