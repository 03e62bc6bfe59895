"""Ledger store: wallet balances and their append-only journal."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.wallet import (
    BalanceType,
    RewardWallet,
    TransactionSource,
    TransactionType,
    WalletTransaction,
)

from .common import require_currency, require_points
from .errors import InsufficientBalance, WalletNotFound

AccountKey = tuple[AccountType, UUID]

# Point debits that move value to another account rather than consuming it.
_TRANSFER_SOURCES = frozenset({TransactionSource.QR_TRANSFER_OUT, TransactionSource.MERCHANT_TRANSFER})


class LedgerService:
    """Apply credits and debits; every mutation writes exactly one journal row.

    The service never commits. Callers own the transaction so a balance change
    and its ``WalletTransaction`` always land (or roll back) together.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_wallet(
        self,
        owner_type: AccountType,
        owner_id: UUID,
        *,
        lock: bool = False,
    ) -> RewardWallet:
        """Return the wallet for an account, optionally holding a row lock."""

        stmt = select(RewardWallet).where(
            RewardWallet.owner_type == owner_type,
            RewardWallet.owner_id == owner_id,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        wallet = result.scalar_one_or_none()
        if wallet is None:
            raise WalletNotFound(f"No {owner_type.value} wallet for {owner_id}")
        return wallet

    async def ensure_wallet(self, owner_type: AccountType, owner_id: UUID) -> RewardWallet:
        """Fetch or lazily create a wallet. Used by account registration.

        Concurrent creation for the same owner surfaces as ``IntegrityError``
        from the owner uniqueness constraint.
        """

        try:
            return await self.get_wallet(owner_type, owner_id)
        except WalletNotFound:
            pass

        wallet = RewardWallet(
            owner_type=owner_type,
            owner_id=owner_id,
            reward_point_balance=0,
            accumulated_points=0,
            income_balance=Decimal("0"),
            total_earned=0,
            total_spent=0,
            total_transferred=0,
            total_income_earned=Decimal("0"),
        )
        self._db.add(wallet)
        await self._db.flush()
        logger.info(
            "Created reward wallet",
            owner_type=owner_type.value,
            owner_id=str(owner_id),
            wallet_id=str(wallet.id),
        )
        return wallet

    async def lock_accounts(self, keys: Iterable[AccountKey]) -> dict[AccountKey, RewardWallet]:
        """Lock several wallets in ascending wallet id order.

        A single ordering across every code path keeps cross-wallet cascades
        free of lock-order deadlocks.
        """

        unique_keys = set(keys)
        if not unique_keys:
            return {}

        stmt = (
            select(RewardWallet)
            .where(
                or_(
                    *(
                        and_(RewardWallet.owner_type == owner_type, RewardWallet.owner_id == owner_id)
                        for owner_type, owner_id in unique_keys
                    )
                )
            )
            .order_by(RewardWallet.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        wallets = {(wallet.owner_type, wallet.owner_id): wallet for wallet in result.scalars().all()}

        missing = unique_keys - wallets.keys()
        if missing:
            owner_type, owner_id = sorted(missing, key=lambda key: str(key[1]))[0]
            raise WalletNotFound(f"No {owner_type.value} wallet for {owner_id}")
        return wallets

    async def credit(
        self,
        wallet: RewardWallet,
        amount: int | Decimal,
        *,
        balance_type: BalanceType,
        source: TransactionSource,
        description: str | None = None,
        reference_id: str | None = None,
        merchant_id: UUID | None = None,
        source_transaction_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WalletTransaction:
        """Increase a balance and append the matching credit row."""

        if balance_type is BalanceType.REWARD_POINTS:
            points = require_points(amount, field="amount")
            wallet.reward_point_balance = int(wallet.reward_point_balance or 0) + points
            wallet.total_earned = int(wallet.total_earned or 0) + points
            journal_amount = Decimal(points)
            balance_after = Decimal(wallet.reward_point_balance)
        else:
            income = require_currency(amount)
            wallet.income_balance = Decimal(wallet.income_balance or 0) + income
            wallet.total_income_earned = Decimal(wallet.total_income_earned or 0) + income
            journal_amount = income
            balance_after = wallet.income_balance

        entry = self._journal(
            wallet,
            TransactionType.CREDIT,
            balance_type=balance_type,
            source=source,
            amount=journal_amount,
            balance_after=balance_after,
            description=description,
            reference_id=reference_id,
            merchant_id=merchant_id,
            source_transaction_id=source_transaction_id,
            metadata=metadata,
        )
        await self._db.flush()
        logger.info(
            "Recorded wallet credit",
            wallet_id=str(wallet.id),
            balance_type=balance_type.value,
            source=source.value,
            amount=str(journal_amount),
            balance_after=str(balance_after),
            reference_id=reference_id,
        )
        return entry

    async def debit(
        self,
        wallet: RewardWallet,
        amount: int | Decimal,
        *,
        balance_type: BalanceType,
        source: TransactionSource,
        description: str | None = None,
        reference_id: str | None = None,
        merchant_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WalletTransaction:
        """Decrease a balance; raise ``InsufficientBalance`` without side effects."""

        if balance_type is BalanceType.REWARD_POINTS:
            points = require_points(amount, field="amount")
            available = int(wallet.reward_point_balance or 0)
            if available < points:
                raise InsufficientBalance(wallet.id, points, available)
            wallet.reward_point_balance = available - points
            if source in _TRANSFER_SOURCES:
                wallet.total_transferred = int(wallet.total_transferred or 0) + points
            else:
                wallet.total_spent = int(wallet.total_spent or 0) + points
            journal_amount = Decimal(points)
            balance_after = Decimal(wallet.reward_point_balance)
        else:
            income = require_currency(amount)
            available_income = Decimal(wallet.income_balance or 0)
            if available_income < income:
                raise InsufficientBalance(wallet.id, income, available_income)
            wallet.income_balance = available_income - income
            journal_amount = income
            balance_after = wallet.income_balance

        entry = self._journal(
            wallet,
            TransactionType.DEBIT,
            balance_type=balance_type,
            source=source,
            amount=journal_amount,
            balance_after=balance_after,
            description=description,
            reference_id=reference_id,
            merchant_id=merchant_id,
            metadata=metadata,
        )
        await self._db.flush()
        logger.info(
            "Recorded wallet debit",
            wallet_id=str(wallet.id),
            balance_type=balance_type.value,
            source=source.value,
            amount=str(journal_amount),
            balance_after=str(balance_after),
            reference_id=reference_id,
        )
        return entry

    def _journal(
        self,
        wallet: RewardWallet,
        transaction_type: TransactionType,
        *,
        balance_type: BalanceType,
        source: TransactionSource,
        amount: Decimal,
        balance_after: Decimal,
        description: str | None,
        reference_id: str | None,
        merchant_id: UUID | None,
        metadata: dict[str, Any] | None,
        source_transaction_id: UUID | None = None,
    ) -> WalletTransaction:
        entry = WalletTransaction(
            wallet_id=wallet.id,
            balance_type=balance_type,
            transaction_type=transaction_type,
            source=source,
            amount=amount,
            balance_after=balance_after,
            description=description,
            reference_id=reference_id,
            merchant_id=merchant_id,
            source_transaction_id=source_transaction_id,
            metadata_json=metadata or {},
        )
        self._db.add(entry)
        return entry


__all__ = ["AccountKey", "LedgerService"]
