from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, func

from reconciler.core.database import Base
from reconciler.models.shared import UUIDType, generate_uuid


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class FrequencyUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


OPEN_STATUSES = (SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_product_status", "user_id", "product_id", "status"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    external_reference = Column(String(255), unique=True, index=True, nullable=False)
    provider_subscription_id = Column(String(64), unique=True, nullable=True)
    user_id = Column(
        String(64),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    product_id = Column(String(64), nullable=False)
    customer_email = Column(String(255), nullable=True, index=True)

    status = Column(
        String(20), nullable=False, default=SubscriptionStatus.PENDING.value, index=True
    )
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    frequency = Column(Integer, nullable=False, default=1)
    frequency_unit = Column(String(10), nullable=False, default=FrequencyUnit.MONTHS.value)
    amount = Column(Numeric(12, 4), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="BRL")
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    last_billing_date = Column(DateTime(timezone=True), nullable=True)
    total_payments_count = Column(Integer, nullable=False, default=0)
    total_amount_paid = Column(Numeric(14, 4), nullable=False, default=0)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
