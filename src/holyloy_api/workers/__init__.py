"""Background workers supporting reward maintenance."""

from .cascade_redrive import CascadeRedriveWorker

__all__ = [
    "CascadeRedriveWorker",
]
