"""Operator-maintained memo of provider payments that carry no reference."""

from sqlalchemy import Column, DateTime, ForeignKey, String, func

from reconciler.core.database import Base
from reconciler.models.shared import UUIDType, generate_uuid


class KnownPaymentMapping(Base):
    __tablename__ = "known_payment_mappings"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    provider_payment_id = Column(String(64), unique=True, nullable=False)
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    added_by = Column(String(255), nullable=False)
    reason = Column(String(500), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
