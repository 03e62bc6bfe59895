"""Merchant-refers-merchant commissions on points transfers, with velocity checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.reward import MerchantReferralCommission, MerchantReferralStatus
from holyloy_api.models.wallet import BalanceType, TransactionSource

from .accounts import AccountService
from .common import percentage_of, require_points, utcnow
from .ledger import LedgerService

MERCHANT_REFERRAL_RATE = Decimal("0.02")

MAX_COMMISSIONS_PER_HOUR = 10
VELOCITY_WINDOW = timedelta(minutes=10)
VELOCITY_THRESHOLD = 5
MAX_DAILY_COMMISSION = Decimal("1000")
HIGH_AMOUNT_THRESHOLD = Decimal("100")
REPEAT_REFERRED_THRESHOLD = 3
MAX_SINGLE_COMMISSION = Decimal("1000")

HIGH_RISK_SCORE = 50
MEDIUM_RISK_SCORE = 25


@dataclass(slots=True)
class CommissionRisk:
    """Outcome of the pre-payment checks for one commission."""

    score: int = 0
    level: str = "low"
    reasons: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.level == "high"

    @property
    def status(self) -> MerchantReferralStatus:
        if self.level == "high":
            return MerchantReferralStatus.BLOCKED
        if self.level == "medium":
            return MerchantReferralStatus.FLAGGED
        return MerchantReferralStatus.APPROVED


class CommissionGuard:
    """Scores a pending commission against the referrer's recent payouts.

    Only paid (approved or flagged) commissions count toward the windows.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def assess(
        self,
        *,
        referrer_merchant_id: UUID,
        referred_merchant_id: UUID,
        amount: Decimal,
        now: datetime,
    ) -> CommissionRisk:
        risk = CommissionRisk()

        hourly_count, _ = await self._window(referrer_merchant_id, now - timedelta(hours=1))
        if hourly_count >= MAX_COMMISSIONS_PER_HOUR:
            risk.reasons.append(f"High frequency: {hourly_count} commissions in last hour")
            risk.score += 30

        burst_count, _ = await self._window(referrer_merchant_id, now - VELOCITY_WINDOW)
        if burst_count >= VELOCITY_THRESHOLD:
            risk.reasons.append(f"Suspicious velocity: {burst_count} commissions in 10 minutes")
            risk.score += 40

        _, daily_total = await self._window(referrer_merchant_id, now - timedelta(days=1))
        if daily_total >= MAX_DAILY_COMMISSION:
            risk.reasons.append(f"High daily amount: {daily_total} in commissions today")
            risk.score += 25

        if amount >= HIGH_AMOUNT_THRESHOLD:
            risk.reasons.append(f"High single commission: {amount}")
            risk.score += 20

        if amount >= 50 and amount % 10 == 0:
            risk.reasons.append(f"Round number commission: {amount}")
            risk.score += 10

        repeat_count, _ = await self._window(
            referrer_merchant_id,
            now - timedelta(days=1),
            referred_merchant_id=referred_merchant_id,
        )
        if repeat_count >= REPEAT_REFERRED_THRESHOLD:
            risk.reasons.append(f"Multiple commissions from same referred merchant: {repeat_count} times")
            risk.score += 15

        if risk.score >= HIGH_RISK_SCORE:
            risk.level = "high"
        elif risk.score >= MEDIUM_RISK_SCORE:
            risk.level = "medium"

        if amount > MAX_SINGLE_COMMISSION:
            risk.reasons.append(f"Invalid commission amount: {amount}")
            risk.level = "high"
        return risk

    async def _window(
        self,
        referrer_merchant_id: UUID,
        since: datetime,
        *,
        referred_merchant_id: UUID | None = None,
    ) -> tuple[int, Decimal]:
        stmt = select(
            func.count(MerchantReferralCommission.id),
            func.coalesce(func.sum(MerchantReferralCommission.commission_amount), 0),
        ).where(
            MerchantReferralCommission.referrer_merchant_id == referrer_merchant_id,
            MerchantReferralCommission.status != MerchantReferralStatus.BLOCKED,
            MerchantReferralCommission.created_at >= since,
        )
        if referred_merchant_id is not None:
            stmt = stmt.where(MerchantReferralCommission.referred_merchant_id == referred_merchant_id)
        count, total = (await self._db.execute(stmt)).one()
        return int(count), Decimal(total)


class MerchantReferralEvaluator:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        accounts: AccountService | None = None,
        guard: CommissionGuard | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._accounts = accounts or AccountService(db_session, ledger=self._ledger)
        self._guard = guard or CommissionGuard(db_session)

    async def evaluate(
        self,
        merchant_id: UUID,
        points_transferred: int,
        *,
        source_transaction_id: UUID,
        now: datetime | None = None,
    ) -> MerchantReferralCommission | None:
        """Pay the referring merchant 2% of a transfer, at most once per transfer.

        Every assessed commission is stored, including blocked ones, so the
        row doubles as the audit trail and the idempotency checkpoint.
        """

        require_points(points_transferred, field="points_transferred")

        existing = await self._db.execute(
            select(MerchantReferralCommission.id).where(
                MerchantReferralCommission.source_transaction_id == source_transaction_id
            )
        )
        if existing.first() is not None:
            return None

        referral = await self._accounts.get_active_merchant_referral(merchant_id)
        if referral is None or referral.referrer_type is not AccountType.MERCHANT:
            return None

        reference_time = now or utcnow()
        amount = percentage_of(points_transferred, MERCHANT_REFERRAL_RATE)
        wallet = await self._ledger.get_wallet(AccountType.MERCHANT, referral.referrer_id, lock=True)

        referrer = await self._accounts.get_merchant(referral.referrer_id)
        if referral.referrer_id == merchant_id:
            risk = CommissionRisk(level="high", reasons=["Self-referral"])
        elif not referrer.is_active:
            risk = CommissionRisk(level="high", reasons=["Referring merchant is inactive"])
        else:
            risk = await self._guard.assess(
                referrer_merchant_id=referral.referrer_id,
                referred_merchant_id=merchant_id,
                amount=amount,
                now=reference_time,
            )

        commission = MerchantReferralCommission(
            referrer_merchant_id=referral.referrer_id,
            referred_merchant_id=merchant_id,
            source_transaction_id=source_transaction_id,
            source_points=points_transferred,
            commission_rate=MERCHANT_REFERRAL_RATE,
            commission_amount=amount,
            status=risk.status,
            risk_score=risk.score,
            risk_level=risk.level,
            reasons=risk.reasons,
            created_at=reference_time,
        )
        self._db.add(commission)
        await self._db.flush()

        if risk.blocked:
            logger.warning(
                "Blocked merchant referral commission",
                commission_id=str(commission.id),
                referrer_id=str(referral.referrer_id),
                referred_merchant_id=str(merchant_id),
                reasons=risk.reasons,
            )
            return commission

        await self._ledger.credit(
            wallet,
            amount,
            balance_type=BalanceType.INCOME,
            source=TransactionSource.MERCHANT_REFERRAL_COMMISSION,
            description=f"2% referral commission on {points_transferred} points transferred",
            reference_id=str(commission.id),
            source_transaction_id=source_transaction_id,
            metadata={
                "referred_merchant_id": str(merchant_id),
                "risk_level": risk.level,
            },
        )
        referral.lifetime_commission_earned = Decimal(referral.lifetime_commission_earned or 0) + amount
        await self._db.flush()

        logger.info(
            "Recorded merchant referral commission",
            commission_id=str(commission.id),
            referrer_id=str(referral.referrer_id),
            referred_merchant_id=str(merchant_id),
            commission_amount=str(amount),
            status=risk.status.value,
        )
        return commission


__all__ = [
    "CommissionGuard",
    "CommissionRisk",
    "MERCHANT_REFERRAL_RATE",
    "MerchantReferralEvaluator",
]
