"""Wallet balances and the append-only transaction journal."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base
from holyloy_api.models.account import AccountType

CONVERSION_THRESHOLD = 1500


class BalanceType(str, Enum):
    REWARD_POINTS = "reward_points"
    INCOME = "income"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionSource(str, Enum):
    """What caused a balance mutation."""

    PURCHASE = "purchase"
    ADMIN_GRANT = "admin_grant"
    MERCHANT_TRANSFER = "merchant_transfer"
    QR_TRANSFER_IN = "qr_transfer_in"
    QR_TRANSFER_OUT = "qr_transfer_out"
    AFFILIATE_COMMISSION = "affiliate_commission"
    STEP_UP_REWARD = "step_up_reward"
    RIPPLE_REWARD = "ripple_reward"
    INFINITY_REWARD = "infinity_reward"
    VOUCHER_CONVERSION = "voucher_conversion"
    INSTANT_CASHBACK = "instant_cashback"
    MERCHANT_REFERRAL_COMMISSION = "merchant_referral_commission"
    CASH_OUT = "cash_out"


# Reward-point credits that feed accumulation, affiliate commissions and voucher volume.
EARNING_SOURCES = frozenset(
    {
        TransactionSource.PURCHASE,
        TransactionSource.ADMIN_GRANT,
        TransactionSource.MERCHANT_TRANSFER,
        TransactionSource.QR_TRANSFER_IN,
    }
)


class RewardWallet(Base):
    """Per-account balances; customers and merchants each hold one."""

    __tablename__ = "reward_wallets"
    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", name="uq_reward_wallets_owner"),
        CheckConstraint("reward_point_balance >= 0", name="reward_point_balance_non_negative"),
        CheckConstraint(
            f"accumulated_points >= 0 AND accumulated_points < {CONVERSION_THRESHOLD}",
            name="accumulated_points_range",
        ),
        CheckConstraint("income_balance >= 0", name="income_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_type = Column(
        SqlEnum(
            AccountType,
            name="reward_wallet_owner_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    owner_id = Column(UUID(as_uuid=True), nullable=False)
    reward_point_balance = Column(BigInteger, nullable=False, default=0, server_default="0")
    accumulated_points = Column(BigInteger, nullable=False, default=0, server_default="0")
    income_balance = Column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    total_earned = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_spent = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_transferred = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_income_earned = Column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class WalletTransaction(Base):
    """Immutable journal row written alongside every balance change."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_wallet_created", "wallet_id", "created_at"),
        Index("ix_wallet_transactions_reference", "source", "reference_id"),
        CheckConstraint("amount > 0", name="amount_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    wallet_id = Column(UUID(as_uuid=True), ForeignKey("reward_wallets.id", ondelete="RESTRICT"), nullable=False)
    balance_type = Column(
        SqlEnum(
            BalanceType,
            name="wallet_balance_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    transaction_type = Column(
        SqlEnum(
            TransactionType,
            name="wallet_transaction_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    source = Column(
        SqlEnum(
            TransactionSource,
            name="wallet_transaction_source",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    amount = Column(Numeric(18, 2), nullable=False)
    balance_after = Column(Numeric(18, 2), nullable=False)
    description = Column(String, nullable=True)
    reference_id = Column(String(64), nullable=True)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=True, index=True)
    # Journal row this entry was derived from, e.g. the transfer behind a cashback credit.
    source_transaction_id = Column(
        UUID(as_uuid=True),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
        index=True,
    )
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
