from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from reconciler.models.subscription import FrequencyUnit


class SubscriptionCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    product_id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_]+$")
    customer_email: EmailStr | None = None
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    frequency: int = Field(default=1, ge=1)
    frequency_unit: FrequencyUnit = FrequencyUnit.MONTHS


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_reference: str
    provider_subscription_id: str | None = None
    user_id: str
    product_id: str
    customer_email: str | None = None
    status: str
    frequency: int
    frequency_unit: str
    amount: Decimal
    currency: str
    next_billing_date: datetime | None = None
    last_billing_date: datetime | None = None
    total_payments_count: int
    total_amount_paid: Decimal
    activated_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_payment_id: str
    subscription_id: UUID
    amount: Decimal
    currency: str
    status: str
    paid_at: datetime | None = None
    next_billing_date: datetime | None = None
    created_at: datetime | None = None
