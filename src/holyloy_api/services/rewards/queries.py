"""Read-side views over wallets, rewards, and referrals."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from typing import Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType, Merchant, Referral
from holyloy_api.models.reward import (
    AffiliateCommission,
    InfinityCycle,
    MerchantReferralCommission,
    MerchantReferralStatus,
    RippleReward,
    StepUpReward,
)
from holyloy_api.models.reward_number import GlobalSerialNumber
from holyloy_api.models.voucher import ShoppingVoucher, ShoppingVoucherStatus
from holyloy_api.models.wallet import BalanceType, RewardWallet, TransactionSource, WalletTransaction

from .common import utcnow
from .ledger import LedgerService


@dataclass(slots=True)
class WalletSummary:
    wallet: RewardWallet
    global_numbers: list[int] = field(default_factory=list)


@dataclass(slots=True)
class AffiliateSummary:
    referral_count: int
    lifetime_commission: Decimal
    total_ripple_rewards: int
    recent_commissions: list[AffiliateCommission] = field(default_factory=list)


@dataclass(slots=True)
class MerchantCashbackSummary:
    instant_cashback_total: Decimal
    today_cashback: Decimal
    month_cashback: Decimal
    total_transfers: int
    referral_commission_total: Decimal
    entries: list[WalletTransaction] = field(default_factory=list)

    @property
    def total_income(self) -> Decimal:
        return self.instant_cashback_total + self.referral_commission_total


@dataclass(slots=True)
class ReferredMerchant:
    merchant_id: UUID
    business_name: str
    lifetime_commission: Decimal
    referred_at: datetime


@dataclass(slots=True)
class MerchantAffiliateSummary:
    referred_customer_count: int
    customer_commission_total: Decimal
    merchant_commission_total: Decimal
    blocked_commission_count: int
    referred_merchants: list[ReferredMerchant] = field(default_factory=list)
    recent_commissions: list[MerchantReferralCommission] = field(default_factory=list)


class RewardQueryService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._ledger = LedgerService(db_session)

    async def get_wallet_summary(self, owner_type: AccountType, owner_id: UUID) -> WalletSummary:
        wallet = await self._ledger.get_wallet(owner_type, owner_id)
        numbers: list[int] = []
        if owner_type is AccountType.CUSTOMER:
            result = await self._db.execute(
                select(GlobalSerialNumber.global_number)
                .where(GlobalSerialNumber.customer_id == owner_id)
                .order_by(GlobalSerialNumber.global_number.asc())
            )
            numbers = [int(value) for value in result.scalars()]
        return WalletSummary(wallet=wallet, global_numbers=numbers)

    async def list_transactions(
        self,
        owner_type: AccountType,
        owner_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        balance_type: BalanceType | None = None,
        sources: Sequence[TransactionSource] | None = None,
    ) -> tuple[list[WalletTransaction], Tuple[datetime, UUID] | None]:
        """Return a paginated slice of journal entries, newest first."""

        wallet = await self._ledger.get_wallet(owner_type, owner_id)
        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        )
        if balance_type is not None:
            stmt = stmt.where(WalletTransaction.balance_type == balance_type)
        if sources:
            stmt = stmt.where(WalletTransaction.source.in_(list(sources)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    WalletTransaction.created_at < cursor_time,
                    and_(
                        WalletTransaction.created_at == cursor_time,
                        WalletTransaction.id < cursor_id,
                    ),
                )
            )

        stmt = stmt.limit(bounded_limit + 1)
        result = await self._db.execute(stmt)
        rows = list(result.scalars().all())
        has_more = len(rows) > bounded_limit
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if has_more and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)

        return entries, next_cursor

    async def list_step_up_rewards(self, customer_id: UUID) -> list[StepUpReward]:
        result = await self._db.execute(
            select(StepUpReward)
            .where(StepUpReward.recipient_customer_id == customer_id)
            .order_by(StepUpReward.recipient_global_number.asc(), StepUpReward.milestone_factor.asc())
        )
        return list(result.scalars().all())

    async def list_ripple_rewards(self, owner_type: AccountType, owner_id: UUID) -> list[RippleReward]:
        result = await self._db.execute(
            select(RippleReward)
            .where(RippleReward.referrer_type == owner_type, RippleReward.referrer_id == owner_id)
            .order_by(RippleReward.created_at.desc(), RippleReward.id.desc())
        )
        return list(result.scalars().all())

    async def list_infinity_cycles(self, customer_id: UUID) -> list[InfinityCycle]:
        result = await self._db.execute(
            select(InfinityCycle)
            .where(InfinityCycle.customer_id == customer_id)
            .order_by(InfinityCycle.cycle_number.asc())
        )
        return list(result.scalars().all())

    async def get_affiliate_summary(
        self,
        owner_type: AccountType,
        owner_id: UUID,
        *,
        recent_limit: int = 10,
    ) -> AffiliateSummary:
        """Referral totals for a referrer plus their most recent commissions."""

        totals = await self._db.execute(
            select(
                func.count(Referral.id),
                func.coalesce(func.sum(Referral.lifetime_commission_earned), 0),
                func.coalesce(func.sum(Referral.total_ripple_rewards), 0),
            ).where(
                Referral.referrer_type == owner_type,
                Referral.referrer_id == owner_id,
                Referral.referee_customer_id.is_not(None),
                Referral.is_active.is_(True),
            )
        )
        referral_count, lifetime_commission, ripple_total = totals.one()

        recent = await self._db.execute(
            select(AffiliateCommission)
            .where(
                AffiliateCommission.referrer_type == owner_type,
                AffiliateCommission.referrer_id == owner_id,
            )
            .order_by(AffiliateCommission.created_at.desc(), AffiliateCommission.id.desc())
            .limit(max(1, recent_limit))
        )
        return AffiliateSummary(
            referral_count=int(referral_count),
            lifetime_commission=Decimal(lifetime_commission),
            total_ripple_rewards=int(ripple_total),
            recent_commissions=list(recent.scalars().all()),
        )

    async def get_merchant_cashback(
        self,
        merchant_id: UUID,
        *,
        limit: int = 50,
        now: datetime | None = None,
    ) -> MerchantCashbackSummary:
        """Instant cashback history plus day, month, and lifetime income totals."""

        wallet = await self._ledger.get_wallet(AccountType.MERCHANT, merchant_id)
        reference_time = now or utcnow()
        day_start = datetime.combine(reference_time.date(), time.min, tzinfo=reference_time.tzinfo)
        month_start = day_start.replace(day=1)

        def _income(source: TransactionSource, since: datetime | None = None):
            stmt = select(
                func.count(WalletTransaction.id),
                func.coalesce(func.sum(WalletTransaction.amount), 0),
            ).where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.balance_type == BalanceType.INCOME,
                WalletTransaction.source == source,
            )
            if since is not None:
                stmt = stmt.where(WalletTransaction.created_at >= since)
            return stmt

        transfers, instant_total = (await self._db.execute(_income(TransactionSource.INSTANT_CASHBACK))).one()
        _, today_total = (await self._db.execute(_income(TransactionSource.INSTANT_CASHBACK, day_start))).one()
        _, month_total = (await self._db.execute(_income(TransactionSource.INSTANT_CASHBACK, month_start))).one()
        _, referral_total = (
            await self._db.execute(_income(TransactionSource.MERCHANT_REFERRAL_COMMISSION))
        ).one()

        entries = await self._db.execute(
            select(WalletTransaction)
            .where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.source == TransactionSource.INSTANT_CASHBACK,
            )
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .limit(max(1, min(limit, 100)))
        )
        return MerchantCashbackSummary(
            instant_cashback_total=Decimal(instant_total),
            today_cashback=Decimal(today_total),
            month_cashback=Decimal(month_total),
            total_transfers=int(transfers),
            referral_commission_total=Decimal(referral_total),
            entries=list(entries.scalars().all()),
        )

    async def get_merchant_affiliate(
        self,
        merchant_id: UUID,
        *,
        recent_limit: int = 10,
    ) -> MerchantAffiliateSummary:
        """Everything a merchant has earned from the accounts it referred."""

        customers = await self._db.execute(
            select(
                func.count(Referral.id),
                func.coalesce(func.sum(Referral.lifetime_commission_earned), 0),
            ).where(
                Referral.referrer_type == AccountType.MERCHANT,
                Referral.referrer_id == merchant_id,
                Referral.referee_customer_id.is_not(None),
                Referral.is_active.is_(True),
            )
        )
        customer_count, customer_total = customers.one()

        merchants = await self._db.execute(
            select(Merchant.id, Merchant.business_name, Referral.lifetime_commission_earned, Referral.created_at)
            .join(Referral, Referral.referee_merchant_id == Merchant.id)
            .where(
                Referral.referrer_type == AccountType.MERCHANT,
                Referral.referrer_id == merchant_id,
                Referral.is_active.is_(True),
            )
            .order_by(Referral.created_at.asc(), Merchant.id.asc())
        )
        referred = [
            ReferredMerchant(
                merchant_id=referred_id,
                business_name=business_name,
                lifetime_commission=Decimal(lifetime or 0),
                referred_at=referred_at,
            )
            for referred_id, business_name, lifetime, referred_at in merchants.all()
        ]

        paid_total = func.coalesce(
            func.sum(MerchantReferralCommission.commission_amount).filter(
                MerchantReferralCommission.status != MerchantReferralStatus.BLOCKED
            ),
            0,
        )
        blocked_count = func.count(MerchantReferralCommission.id).filter(
            MerchantReferralCommission.status == MerchantReferralStatus.BLOCKED
        )
        merchant_total, blocked = (
            await self._db.execute(
                select(paid_total, blocked_count).where(
                    MerchantReferralCommission.referrer_merchant_id == merchant_id
                )
            )
        ).one()

        recent = await self._db.execute(
            select(MerchantReferralCommission)
            .where(MerchantReferralCommission.referrer_merchant_id == merchant_id)
            .order_by(MerchantReferralCommission.created_at.desc(), MerchantReferralCommission.id.desc())
            .limit(max(1, recent_limit))
        )
        return MerchantAffiliateSummary(
            referred_customer_count=int(customer_count),
            customer_commission_total=Decimal(customer_total),
            merchant_commission_total=Decimal(merchant_total),
            blocked_commission_count=int(blocked),
            referred_merchants=referred,
            recent_commissions=list(recent.scalars().all()),
        )

    async def list_vouchers(
        self,
        customer_id: UUID,
        *,
        status: ShoppingVoucherStatus | None = None,
    ) -> list[ShoppingVoucher]:
        stmt = (
            select(ShoppingVoucher)
            .where(ShoppingVoucher.customer_id == customer_id)
            .order_by(ShoppingVoucher.voucher_points.desc(), ShoppingVoucher.voucher_code.asc())
        )
        if status is not None:
            stmt = stmt.where(ShoppingVoucher.status == status)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)


__all__ = [
    "AffiliateSummary",
    "MerchantAffiliateSummary",
    "MerchantCashbackSummary",
    "ReferredMerchant",
    "RewardQueryService",
    "WalletSummary",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
