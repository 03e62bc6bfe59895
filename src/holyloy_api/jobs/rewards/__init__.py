"""Reward job exports."""

from .redrive import run_cascade_redrive  # noqa: F401
from .vouchers import run_voucher_expiry  # noqa: F401

__all__ = [
    "run_cascade_redrive",
    "run_voucher_expiry",
]
