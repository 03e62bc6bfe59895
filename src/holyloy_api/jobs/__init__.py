"""Recurring job entrypoints for reward maintenance."""

__all__ = [
    "rewards",
]
