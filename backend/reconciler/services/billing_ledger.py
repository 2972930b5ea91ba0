"""Payment ledger: idempotent payment recording and billing counters."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciler.models.payment_event import PaymentEvent
from reconciler.models.shared import as_utc, utc_now
from reconciler.models.subscription import Subscription
from reconciler.repositories.payment_event_repository import PaymentEventRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.services import state_machine
from reconciler.services.billing_dates import compute_next_billing_date
from reconciler.services.state_machine import TransitionDecision, TransitionOutcome

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    payment_event: PaymentEvent
    created: bool
    decision: TransitionDecision | None = None


class BillingLedger:
    def __init__(self, db: Session):
        self.db = db
        self.payments = PaymentEventRepository(db)
        self.subscriptions = SubscriptionRepository(db)

    def record_payment(
        self,
        subscription: Subscription,
        provider_payment_id: str,
        amount: Decimal,
        currency: str,
        status: str,
        paid_at: datetime | None,
    ) -> LedgerEntry:
        """Record a provider payment once.

        A successful payment bumps the billing counters and applies the
        confirm-payment decision in the same commit. Any other status is
        stored for audit only. Re-recording a known payment id is a no-op.
        """
        existing = self.payments.get_by_provider_payment_id(provider_payment_id)
        if existing:
            logger.info("Payment %s already recorded, skipping", provider_payment_id)
            return LedgerEntry(payment_event=existing, created=False)

        paid_at = as_utc(paid_at) or utc_now()
        successful = state_machine.is_successful_payment(status)
        next_billing_date = (
            compute_next_billing_date(
                subscription.frequency,  # type: ignore[arg-type]
                subscription.frequency_unit,  # type: ignore[arg-type]
                paid_at,
            )
            if successful
            else None
        )

        try:
            event = self.payments.add(
                provider_payment_id=provider_payment_id,
                subscription_id=subscription.id,  # type: ignore[arg-type]
                amount=amount,
                currency=currency,
                status=status,
                paid_at=paid_at,
                next_billing_date=next_billing_date,
            )
        except IntegrityError:
            self.db.rollback()
            logger.info("Payment %s recorded concurrently, skipping", provider_payment_id)
            winner = self.payments.get_by_provider_payment_id(provider_payment_id)
            return LedgerEntry(payment_event=winner, created=False)  # type: ignore[arg-type]

        decision = None
        if successful:
            self.subscriptions.record_billing(
                subscription, amount, paid_at, next_billing_date  # type: ignore[arg-type]
            )
            decision = state_machine.confirm_payment(subscription, paid_at)
            if decision.outcome in (TransitionOutcome.APPLIED, TransitionOutcome.UNCHANGED):
                self.subscriptions.apply_decision(subscription, decision, commit=False)
        self.subscriptions.commit()

        logger.info(
            "Recorded payment %s (%s) for subscription %s",
            provider_payment_id,
            status,
            subscription.id,
        )
        return LedgerEntry(payment_event=event, created=True, decision=decision)
