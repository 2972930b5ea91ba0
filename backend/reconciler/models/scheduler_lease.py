"""Persisted reconciliation scheduler state and single-flight lease."""

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.types import JSON

from reconciler.core.database import Base


class SchedulerLease(Base):
    __tablename__ = "scheduler_leases"

    name = Column(String(64), primary_key=True)
    holder = Column(String(128), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    last_run_started_at = Column(DateTime(timezone=True), nullable=True)
    last_run_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_trigger = Column(String(20), nullable=True)
    last_summary = Column(JSON, nullable=True)
