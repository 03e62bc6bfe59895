"""Merchant-scoped shopping vouchers and cash-out requests."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Numeric,
    String,
    Text,
    JSON,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base


class ShoppingVoucherStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class CashOutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class ShoppingVoucher(Base):
    """Slice of a customer's points spendable only with one merchant."""

    __tablename__ = "shopping_vouchers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id"), nullable=False, index=True)
    voucher_code = Column(String(32), nullable=False, unique=True)
    voucher_points = Column(BigInteger, nullable=False)
    original_points = Column(BigInteger, nullable=False)
    ratio = Column(Numeric(10, 8), nullable=False)
    status = Column(
        SqlEnum(
            ShoppingVoucherStatus,
            name="shopping_voucher_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ShoppingVoucherStatus.ACTIVE,
    )
    conversion_transaction_id = Column(UUID(as_uuid=True), ForeignKey("wallet_transactions.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class CashOutRequest(Base):
    """Customer request to cash out voucher balance; approval happens elsewhere."""

    __tablename__ = "voucher_cash_out_requests"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    requested_amount = Column(BigInteger, nullable=False)
    available_balance = Column(BigInteger, nullable=False)
    status = Column(
        SqlEnum(
            CashOutStatus,
            name="voucher_cash_out_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=CashOutStatus.PENDING,
    )
    payment_method = Column(String(32), nullable=True)
    payment_details = Column(JSON, nullable=True)
    admin_notes = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
