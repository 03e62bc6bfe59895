"""Global Number allocation state."""

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
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base

GLOBAL_NUMBER_SEQUENCE = "global_number"


class GlobalNumberOrigin(str, Enum):
    EARNED = "earned"
    INFINITY = "infinity"


class GlobalNumberCounter(Base):
    """Named monotonic counter; advanced with a single UPDATE ... RETURNING."""

    __tablename__ = "global_number_counters"
    __table_args__ = (CheckConstraint("last_value >= 0", name="last_value_non_negative"),)

    name = Column(String(64), primary_key=True)
    last_value = Column(BigInteger, nullable=False, default=0, server_default="0")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class GlobalSerialNumber(Base):
    """One Global Number owned by a customer. Never reassigned or deleted."""

    __tablename__ = "global_serial_numbers"
    __table_args__ = (CheckConstraint("global_number > 0", name="global_number_positive"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    global_number = Column(BigInteger, nullable=False, unique=True, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    origin = Column(
        SqlEnum(
            GlobalNumberOrigin,
            name="global_number_origin",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=GlobalNumberOrigin.EARNED,
    )
    infinity_cycle_id = Column(UUID(as_uuid=True), ForeignKey("infinity_cycles.id"), nullable=True)
    # Set once StepUp evaluation for this number has committed; null rows are re-driven.
    step_up_evaluated_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
