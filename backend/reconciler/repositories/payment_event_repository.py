from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from reconciler.models.payment_event import PaymentEvent


class PaymentEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_provider_payment_id(self, provider_payment_id: str) -> PaymentEvent | None:
        return (
            self.db.query(PaymentEvent)
            .filter(PaymentEvent.provider_payment_id == provider_payment_id)
            .first()
        )

    def get_by_subscription_id(self, subscription_id: UUID) -> list[PaymentEvent]:
        return (
            self.db.query(PaymentEvent)
            .filter(PaymentEvent.subscription_id == subscription_id)
            .order_by(PaymentEvent.paid_at.asc())
            .all()
        )

    def add(
        self,
        provider_payment_id: str,
        subscription_id: UUID,
        amount: Decimal,
        currency: str,
        status: str,
        paid_at: datetime | None,
        next_billing_date: datetime | None = None,
    ) -> PaymentEvent:
        """Insert and flush without committing.

        Raises IntegrityError when the provider payment id is already stored.
        """
        event = PaymentEvent(
            provider_payment_id=provider_payment_id,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            status=status,
            paid_at=paid_at,
            next_billing_date=next_billing_date,
        )
        self.db.add(event)
        self.db.flush()
        return event
