"""Lifetime affiliate commissions on referred customers' earnings."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.reward import AffiliateCommission
from holyloy_api.models.wallet import BalanceType, TransactionSource

from .accounts import AccountService
from .common import percentage_of, require_points
from .ledger import LedgerService

AFFILIATE_COMMISSION_RATE = Decimal("0.05")


class AffiliateCommissionEvaluator:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        accounts: AccountService | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._accounts = accounts or AccountService(db_session, ledger=self._ledger)

    async def evaluate(
        self,
        customer_id: UUID,
        points_earned: int,
        *,
        source_transaction_id: UUID,
    ) -> AffiliateCommission | None:
        """Pay 5% of an earn event to the referrer; at most once per source transaction."""

        require_points(points_earned, field="points_earned")

        existing = await self._db.execute(
            select(AffiliateCommission.id).where(
                AffiliateCommission.source_transaction_id == source_transaction_id
            )
        )
        if existing.first() is not None:
            return None

        referral = await self._accounts.get_active_referral(customer_id)
        if referral is None:
            return None

        commission_amount = percentage_of(points_earned, AFFILIATE_COMMISSION_RATE)
        wallet = await self._ledger.get_wallet(referral.referrer_type, referral.referrer_id, lock=True)
        commission = AffiliateCommission(
            referrer_type=referral.referrer_type,
            referrer_id=referral.referrer_id,
            referred_customer_id=customer_id,
            source_points=points_earned,
            commission_amount=commission_amount,
            source_transaction_id=source_transaction_id,
        )
        self._db.add(commission)
        await self._db.flush()

        await self._ledger.credit(
            wallet,
            commission_amount,
            balance_type=BalanceType.INCOME,
            source=TransactionSource.AFFILIATE_COMMISSION,
            description=f"5% affiliate commission on {points_earned} points",
            reference_id=str(commission.id),
            metadata={
                "referred_customer_id": str(customer_id),
                "source_transaction_id": str(source_transaction_id),
            },
        )
        referral.lifetime_commission_earned = (
            Decimal(referral.lifetime_commission_earned or 0) + commission_amount
        )
        await self._db.flush()

        logger.info(
            "Recorded affiliate commission",
            commission_id=str(commission.id),
            referrer_id=str(referral.referrer_id),
            referred_customer_id=str(customer_id),
            commission_amount=str(commission_amount),
        )
        return commission


__all__ = ["AFFILIATE_COMMISSION_RATE", "AffiliateCommissionEvaluator"]
