"""Audit log of inbound provider webhook deliveries."""

from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.types import JSON

from reconciler.core.database import Base
from reconciler.models.shared import UUIDType, generate_uuid


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class MatchOutcome(str, Enum):
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


class WebhookEventLog(Base):
    __tablename__ = "webhook_event_logs"
    __table_args__ = (
        Index("ix_webhook_event_logs_status", "status"),
        Index("ix_webhook_event_logs_data_id", "data_id"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    event_id = Column(String(128), unique=True, nullable=False)
    event_type = Column(String(64), nullable=True)
    action = Column(String(64), nullable=True)
    data_id = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.RECEIVED.value)
    error_code = Column(String(64), nullable=True)
    error_detail = Column(Text, nullable=True)
    match_outcome = Column(String(20), nullable=True)
    subscription_id = Column(UUIDType, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
