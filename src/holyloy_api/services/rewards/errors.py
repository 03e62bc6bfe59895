"""Reward engine failure taxonomy."""

from __future__ import annotations

from uuid import UUID


class RewardEngineError(RuntimeError):
    """Base exception for reward ledger and cascade failures."""


class InsufficientBalance(RewardEngineError):
    """Raised when a debit would take a wallet below zero."""

    def __init__(self, wallet_id: UUID, requested: object, available: object) -> None:
        super().__init__(f"Wallet {wallet_id} has {available} available, {requested} requested")
        self.wallet_id = wallet_id
        self.requested = requested
        self.available = available


class TokenNotFound(RewardEngineError):
    """Raised when a QR transfer code does not exist."""


class TokenExpired(RewardEngineError):
    """Raised when a QR transfer code is redeemed after its expiry."""


class TokenAlreadyUsed(RewardEngineError):
    """Raised when a QR transfer code has already been redeemed."""


class DuplicateMilestone(RewardEngineError):
    """A StepUp milestone already paid out for this recipient and factor."""

    def __init__(self, recipient_global_number: int, milestone_factor: int) -> None:
        super().__init__(
            f"StepUp factor {milestone_factor} already awarded to Global Number {recipient_global_number}"
        )
        self.recipient_global_number = recipient_global_number
        self.milestone_factor = milestone_factor


class AllocationConflict(RewardEngineError):
    """A cascade step kept losing concurrent write races and was abandoned."""


class CustomerNotFound(RewardEngineError):
    """Raised when a customer id does not resolve."""


class MerchantNotFound(RewardEngineError):
    """Raised when a merchant id does not resolve."""


class WalletNotFound(RewardEngineError):
    """Raised when an account has no wallet."""


class CashOutRequestPending(RewardEngineError):
    """Raised when a customer already has a cash-out request awaiting review."""


__all__ = [
    "AllocationConflict",
    "CashOutRequestPending",
    "CustomerNotFound",
    "DuplicateMilestone",
    "InsufficientBalance",
    "MerchantNotFound",
    "RewardEngineError",
    "TokenAlreadyUsed",
    "TokenExpired",
    "TokenNotFound",
    "WalletNotFound",
]
