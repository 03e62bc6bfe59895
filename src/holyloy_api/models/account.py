"""Marketplace participants and the referral graph feeding the reward engine."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base


class AccountType(str, Enum):
    """Owner kinds for wallets and referrers."""

    CUSTOMER = "customer"
    MERCHANT = "merchant"


class Customer(Base):
    """Shopper account that earns points and owns Global Numbers."""

    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    referral_code = Column(String(32), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Merchant(Base):
    """Merchant account; holds points for transfers and collects cashback income."""

    __tablename__ = "merchants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    referral_code = Column(String(32), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Referral(Base):
    """Edge in the referral graph.

    The referee is either a customer or a merchant, and each is referred at
    most once. Merchant referrers of merchants earn the transfer commission.
    """

    __tablename__ = "referrals"
    __table_args__ = (
        Index("ix_referrals_referrer", "referrer_type", "referrer_id"),
        CheckConstraint(
            "(referee_customer_id IS NULL) <> (referee_merchant_id IS NULL)",
            name="referral_single_referee",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_type = Column(
        SqlEnum(
            AccountType,
            name="referral_referrer_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    referrer_id = Column(UUID(as_uuid=True), nullable=False)
    referee_customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    referee_merchant_id = Column(
        UUID(as_uuid=True),
        ForeignKey("merchants.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    referral_code = Column(String(32), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    lifetime_commission_earned = Column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    total_ripple_rewards = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
