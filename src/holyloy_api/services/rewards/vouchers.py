"""Shopping voucher conversion, expiry, and cash-out requests."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.voucher import (
    CashOutRequest,
    CashOutStatus,
    ShoppingVoucher,
    ShoppingVoucherStatus,
)
from holyloy_api.models.wallet import (
    EARNING_SOURCES,
    BalanceType,
    RewardWallet,
    TransactionSource,
    TransactionType,
    WalletTransaction,
)

from .common import require_points, utcnow
from .errors import CashOutRequestPending, InsufficientBalance
from .ledger import LedgerService

VOUCHER_TRIGGER_POINTS = 30_000
VOUCHER_SLICE_POINTS = 6_000
RATIO_PRECISION = Decimal("0.00000001")


def split_proportionally(total: int, volumes: Sequence[tuple[UUID, int]]) -> dict[UUID, int]:
    """Floor each merchant's proportional share; the largest-volume merchant takes the remainder.

    Ties on volume go to the merchant listed first.
    """

    weight = sum(volume for _, volume in volumes)
    if weight <= 0:
        raise ValueError("Proportional split needs a positive total volume")

    shares = {merchant_id: total * volume // weight for merchant_id, volume in volumes}
    largest_merchant = max(volumes, key=lambda item: item[1])[0]
    shares[largest_merchant] += total - sum(shares.values())
    return shares


class ShoppingVoucherConverter:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        expiry_days: int = 365,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._expiry = timedelta(days=expiry_days)

    async def check_and_convert(self, customer_id: UUID) -> list[ShoppingVoucher]:
        """Carve 6,000 points into merchant vouchers the first time lifetime earnings reach 30,000.

        Conversion is deferred, not dropped, while the customer has no merchant
        volume or less than 6,000 spendable points; a later call retries it.
        """

        wallet = await self._ledger.get_wallet(AccountType.CUSTOMER, customer_id, lock=True)
        if int(wallet.total_earned or 0) < VOUCHER_TRIGGER_POINTS:
            return []
        if await self._already_converted(wallet.id):
            return []

        volumes = await self.merchant_volumes(wallet.id)
        if not volumes:
            logger.info("Deferring voucher conversion without merchant volume", customer_id=str(customer_id))
            return []
        if int(wallet.reward_point_balance or 0) < VOUCHER_SLICE_POINTS:
            logger.info(
                "Deferring voucher conversion on low balance",
                customer_id=str(customer_id),
                reward_point_balance=wallet.reward_point_balance,
            )
            return []

        shares = split_proportionally(VOUCHER_SLICE_POINTS, volumes)
        conversion = await self._ledger.debit(
            wallet,
            VOUCHER_SLICE_POINTS,
            balance_type=BalanceType.REWARD_POINTS,
            source=TransactionSource.VOUCHER_CONVERSION,
            description="Shopping voucher conversion",
            metadata={"merchant_shares": {str(key): value for key, value in shares.items()}},
        )

        total_volume = sum(volume for _, volume in volumes)
        expires_at = utcnow() + self._expiry
        vouchers: list[ShoppingVoucher] = []
        for merchant_id, volume in volumes:
            voucher_points = shares[merchant_id]
            if voucher_points <= 0:
                continue
            vouchers.append(
                ShoppingVoucher(
                    customer_id=customer_id,
                    merchant_id=merchant_id,
                    voucher_code=_generate_voucher_code(),
                    voucher_points=voucher_points,
                    original_points=voucher_points,
                    ratio=(Decimal(volume) / Decimal(total_volume)).quantize(RATIO_PRECISION),
                    status=ShoppingVoucherStatus.ACTIVE,
                    conversion_transaction_id=conversion.id,
                    expires_at=expires_at,
                )
            )
        self._db.add_all(vouchers)
        await self._db.flush()

        logger.info(
            "Converted points into shopping vouchers",
            customer_id=str(customer_id),
            voucher_count=len(vouchers),
            merchant_count=len(volumes),
        )
        return vouchers

    async def merchant_volumes(self, wallet_id: UUID) -> list[tuple[UUID, int]]:
        """Earned points per merchant, largest first."""

        volume = func.sum(WalletTransaction.amount)
        stmt = (
            select(WalletTransaction.merchant_id, volume)
            .where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.merchant_id.is_not(None),
                WalletTransaction.balance_type == BalanceType.REWARD_POINTS,
                WalletTransaction.transaction_type == TransactionType.CREDIT,
                WalletTransaction.source.in_(list(EARNING_SOURCES)),
            )
            .group_by(WalletTransaction.merchant_id)
            .order_by(volume.desc(), WalletTransaction.merchant_id.asc())
        )
        result = await self._db.execute(stmt)
        return [(merchant_id, int(total)) for merchant_id, total in result.all() if total and total > 0]

    async def pending_conversions(self, limit: int) -> list[UUID]:
        """Customers whose conversion is due and not deferred, oldest wallet first."""

        converted = exists().where(
            WalletTransaction.wallet_id == RewardWallet.id,
            WalletTransaction.source == TransactionSource.VOUCHER_CONVERSION,
        )
        has_volume = exists().where(
            WalletTransaction.wallet_id == RewardWallet.id,
            WalletTransaction.merchant_id.is_not(None),
            WalletTransaction.balance_type == BalanceType.REWARD_POINTS,
            WalletTransaction.transaction_type == TransactionType.CREDIT,
            WalletTransaction.source.in_(list(EARNING_SOURCES)),
        )
        result = await self._db.execute(
            select(RewardWallet.owner_id)
            .where(
                RewardWallet.owner_type == AccountType.CUSTOMER,
                RewardWallet.total_earned >= VOUCHER_TRIGGER_POINTS,
                RewardWallet.reward_point_balance >= VOUCHER_SLICE_POINTS,
                has_volume,
                ~converted,
            )
            .order_by(RewardWallet.created_at.asc(), RewardWallet.id.asc())
            .limit(limit)
        )
        return list(result.scalars())

    async def active_voucher_balance(self, customer_id: UUID, *, now: datetime | None = None) -> int:
        reference_time = now or utcnow()
        result = await self._db.execute(
            select(func.coalesce(func.sum(ShoppingVoucher.voucher_points), 0)).where(
                ShoppingVoucher.customer_id == customer_id,
                ShoppingVoucher.status == ShoppingVoucherStatus.ACTIVE,
                ShoppingVoucher.expires_at > reference_time,
            )
        )
        return int(result.scalar_one())

    async def request_cash_out(
        self,
        customer_id: UUID,
        amount: int,
        *,
        payment_method: str | None = None,
        payment_details: dict[str, Any] | None = None,
    ) -> CashOutRequest:
        """Queue a cash-out request for review; one pending request per customer."""

        require_points(amount, field="amount")
        wallet = await self._ledger.get_wallet(AccountType.CUSTOMER, customer_id, lock=True)

        pending = await self._db.execute(
            select(CashOutRequest.id).where(
                CashOutRequest.customer_id == customer_id,
                CashOutRequest.status == CashOutStatus.PENDING,
            )
        )
        if pending.first() is not None:
            raise CashOutRequestPending("A cash-out request is already pending review")

        available = await self.active_voucher_balance(customer_id)
        if amount > available:
            raise InsufficientBalance(wallet.id, amount, available)

        request = CashOutRequest(
            customer_id=customer_id,
            requested_amount=amount,
            available_balance=available,
            status=CashOutStatus.PENDING,
            payment_method=payment_method,
            payment_details=payment_details or {},
        )
        self._db.add(request)
        await self._db.flush()
        logger.info(
            "Queued voucher cash-out request",
            cash_out_request_id=str(request.id),
            customer_id=str(customer_id),
            requested_amount=amount,
            available_balance=available,
        )
        return request

    async def expire_vouchers(self, *, now: datetime | None = None) -> int:
        reference_time = now or utcnow()
        result = await self._db.execute(
            update(ShoppingVoucher)
            .where(
                ShoppingVoucher.status == ShoppingVoucherStatus.ACTIVE,
                ShoppingVoucher.expires_at <= reference_time,
            )
            .values(status=ShoppingVoucherStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        expired = int(result.rowcount or 0)
        if expired:
            logger.info("Expired shopping vouchers", count=expired)
        return expired

    async def _already_converted(self, wallet_id: UUID) -> bool:
        result = await self._db.execute(
            select(WalletTransaction.id).where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.source == TransactionSource.VOUCHER_CONVERSION,
            )
        )
        return result.first() is not None


def _generate_voucher_code() -> str:
    return f"SV-{secrets.token_hex(6).upper()}"


__all__ = [
    "ShoppingVoucherConverter",
    "VOUCHER_SLICE_POINTS",
    "VOUCHER_TRIGGER_POINTS",
    "split_proportionally",
]
