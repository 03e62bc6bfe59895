"""Instant cashback for merchants on merchant-to-customer transfers."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.wallet import BalanceType, TransactionSource, WalletTransaction

from .common import percentage_of, require_points
from .ledger import LedgerService

INSTANT_CASHBACK_RATE = Decimal("0.10")


class InstantCashbackEvaluator:
    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    async def evaluate(
        self,
        merchant_id: UUID,
        points_transferred: int,
        *,
        source_transaction_id: UUID,
    ) -> WalletTransaction:
        """Credit 10% of a transfer to the merchant's income wallet, once per transfer."""

        try:
            require_points(points_transferred, field="points_transferred")
        except ValueError as exc:
            raise ValueError("Minimum 1 point required for cashback") from exc

        wallet = await self._ledger.get_wallet(AccountType.MERCHANT, merchant_id, lock=True)
        existing = await self._db.execute(
            select(WalletTransaction).where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.source == TransactionSource.INSTANT_CASHBACK,
                WalletTransaction.source_transaction_id == source_transaction_id,
            )
        )
        prior = existing.scalar_one_or_none()
        if prior is not None:
            return prior

        cashback = percentage_of(points_transferred, INSTANT_CASHBACK_RATE)
        entry = await self._ledger.credit(
            wallet,
            cashback,
            balance_type=BalanceType.INCOME,
            source=TransactionSource.INSTANT_CASHBACK,
            description=f"10% instant cashback on {points_transferred} points transfer",
            reference_id=str(source_transaction_id),
            source_transaction_id=source_transaction_id,
            metadata={"points_transferred": points_transferred},
        )
        logger.info(
            "Credited instant cashback",
            merchant_id=str(merchant_id),
            points_transferred=points_transferred,
            cashback=str(cashback),
        )
        return entry


__all__ = ["INSTANT_CASHBACK_RATE", "InstantCashbackEvaluator"]
