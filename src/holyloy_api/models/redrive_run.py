"""Audit rows for cascade re-drive sweeps."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from holyloy_api.db.base import Base


class CascadeRedriveRun(Base):
    __tablename__ = "cascade_redrive_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    triggered_by = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="running", server_default="running")
    queued_count = Column(Integer, nullable=False, default=0, server_default="0")
    processed_count = Column(Integer, nullable=False, default=0, server_default="0")
    summary = Column(JSON, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
