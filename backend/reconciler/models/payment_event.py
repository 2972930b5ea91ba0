"""Ledger row for a single provider payment."""

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, func

from reconciler.core.database import Base
from reconciler.models.shared import UUIDType, generate_uuid


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    provider_payment_id = Column(String(64), unique=True, nullable=False)
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(30), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
