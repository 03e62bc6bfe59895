"""Records of rewards paid out by the cascade evaluators."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base
from holyloy_api.models.account import AccountType


class StepUpReward(Base):
    """Milestone payout to the owner of ``recipient_global_number``."""

    __tablename__ = "step_up_rewards"
    __table_args__ = (
        UniqueConstraint(
            "recipient_global_number",
            "milestone_factor",
            name="uq_step_up_rewards_recipient_factor",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    recipient_global_number = Column(BigInteger, ForeignKey("global_serial_numbers.global_number"), nullable=False)
    recipient_customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    trigger_global_number = Column(BigInteger, ForeignKey("global_serial_numbers.global_number"), nullable=False)
    milestone_factor = Column(Integer, nullable=False)
    reward_points = Column(BigInteger, nullable=False)
    is_awarded = Column(Boolean, nullable=False, default=False, server_default="false")
    awarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class RippleReward(Base):
    """Referrer share of a StepUp payout."""

    __tablename__ = "ripple_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    source_step_up_reward_id = Column(
        UUID(as_uuid=True),
        ForeignKey("step_up_rewards.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    referrer_type = Column(
        SqlEnum(
            AccountType,
            name="ripple_referrer_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    referrer_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    referred_customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    step_up_amount = Column(BigInteger, nullable=False)
    ripple_amount = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class InfinityCycle(Base):
    """Batch of granted Global Numbers plus a lump income credit."""

    __tablename__ = "infinity_cycles"
    __table_args__ = (
        UniqueConstraint("customer_id", "cycle_number", name="uq_infinity_cycles_customer_cycle"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)
    reward_numbers = Column(JSON, nullable=False, default=list)
    reward_number_count = Column(Integer, nullable=False)
    points_per_number = Column(BigInteger, nullable=False)
    total_points = Column(BigInteger, nullable=False)
    step_up_points_at_trigger = Column(BigInteger, nullable=False)
    trigger_global_number = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AffiliateCommission(Base):
    """Lifetime 5% commission on a referred customer's earn event."""

    __tablename__ = "affiliate_commissions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_type = Column(
        SqlEnum(
            AccountType,
            name="affiliate_referrer_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    referrer_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    referred_customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    source_points = Column(BigInteger, nullable=False)
    commission_amount = Column(Numeric(18, 2), nullable=False)
    source_transaction_id = Column(
        UUID(as_uuid=True),
        ForeignKey("wallet_transactions.id"),
        nullable=False,
        unique=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class MerchantReferralStatus(str, Enum):
    APPROVED = "approved"
    FLAGGED = "flagged"
    BLOCKED = "blocked"


class MerchantReferralCommission(Base):
    """2% commission owed to the merchant that referred a transferring merchant.

    Blocked rows are kept as the audit trail and pay nothing.
    """

    __tablename__ = "merchant_referral_commissions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=False, index=True)
    referred_merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=False, index=True)
    source_transaction_id = Column(
        UUID(as_uuid=True),
        ForeignKey("wallet_transactions.id"),
        nullable=False,
        unique=True,
    )
    source_points = Column(BigInteger, nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=False)
    commission_amount = Column(Numeric(18, 2), nullable=False)
    status = Column(
        SqlEnum(
            MerchantReferralStatus,
            name="merchant_referral_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    risk_score = Column(Integer, nullable=False, default=0, server_default="0")
    reasons = Column(JSON, nullable=False, default=list)
    risk_level = Column(String(16), nullable=False, default="low", server_default="low")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
