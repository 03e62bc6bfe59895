"""Single-use QR point transfer tokens."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base


class QRTransferToken(Base):
    __tablename__ = "qr_transfer_tokens"
    __table_args__ = (CheckConstraint("points > 0", name="points_positive"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)
    sender_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    receiver_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True)
    points = Column(BigInteger, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_used = Column(Boolean, nullable=False, default=False, server_default="false")
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
