"""Persist state machine decisions and run the side effects they carry.

Webhook ingestion and polling both go through ``SideEffectExecutor`` so a
provider observation has the same effect whichever path delivered it.
"""

import logging

from sqlalchemy.orm import Session

from reconciler.models.shared import utc_now
from reconciler.models.subscription import Subscription
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.services import state_machine
from reconciler.services.billing_dates import compute_next_billing_date
from reconciler.services.billing_ledger import BillingLedger
from reconciler.services.duplicate_resolver import DuplicateResolver
from reconciler.services.notification_service import ActivationNotifier
from reconciler.services.provider_client import PaymentDetails, SubscriptionDetails
from reconciler.services.state_machine import SideEffect, TransitionDecision, TransitionOutcome

logger = logging.getLogger(__name__)

_PERSISTED_OUTCOMES = (TransitionOutcome.APPLIED, TransitionOutcome.UNCHANGED)


class SideEffectExecutor:
    def __init__(self, db: Session, notifier: ActivationNotifier | None = None):
        self.db = db
        self.notifier = notifier if notifier is not None else ActivationNotifier()
        self.subscriptions = SubscriptionRepository(db)
        self.ledger = BillingLedger(db)
        self.resolver = DuplicateResolver(db, notifier=self.notifier)

    def link_provider_subscription(self, subscription: Subscription, provider_subscription_id: str | None) -> None:
        """Store the provider id unless it is already set or owned by another row."""
        if not provider_subscription_id or subscription.provider_subscription_id:
            return
        owner = self.subscriptions.get_by_provider_subscription_id(provider_subscription_id)
        if owner is not None and owner.id != subscription.id:
            logger.warning(
                "Provider subscription %s already linked to %s, not linking %s",
                provider_subscription_id,
                owner.id,
                subscription.id,
            )
            return
        self.subscriptions.link_provider_subscription(subscription, provider_subscription_id)
        logger.info(
            "Linked subscription %s to provider subscription %s",
            subscription.id,
            provider_subscription_id,
        )

    def sync_subscription(
        self, subscription: Subscription, details: SubscriptionDetails
    ) -> TransitionDecision:
        """Apply a provider subscription (preapproval) snapshot."""
        self.link_provider_subscription(subscription, details.id)
        decision = state_machine.apply(subscription, details.status, details.event_time)
        return self.execute(subscription, decision)

    def sync_payment(self, subscription: Subscription, payment: PaymentDetails) -> TransitionDecision:
        """Apply a provider payment: ledger first, then status."""
        self.link_provider_subscription(subscription, payment.provider_subscription_id)
        decision = state_machine.apply(
            subscription, payment.status, payment.event_time, has_payment=True
        )
        return self.execute(subscription, decision, payment=payment)

    def execute(
        self,
        subscription: Subscription,
        decision: TransitionDecision,
        payment: PaymentDetails | None = None,
    ) -> TransitionDecision:
        """Persist ``decision`` (or the ledger's own decision) and run its side effects.

        A payment is always handed to the ledger, even when the status
        decision was rejected: the provider already moved the money.
        """
        persisted = decision
        if payment is not None:
            entry = self.ledger.record_payment(
                subscription,
                provider_payment_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status,
                paid_at=payment.event_time,
            )
            if entry.decision is not None:
                persisted = entry.decision
            elif decision.outcome in _PERSISTED_OUTCOMES:
                self.subscriptions.apply_decision(subscription, decision)
        elif decision.outcome in _PERSISTED_OUTCOMES:
            self.subscriptions.apply_decision(subscription, decision)

        if persisted.outcome == TransitionOutcome.REJECTED:
            logger.info(
                "Transition rejected for subscription %s: %s", subscription.id, persisted.reason
            )
        if persisted.changed:
            logger.info(
                "Subscription %s %s -> %s",
                subscription.id,
                persisted.previous_status,
                persisted.new_status,
            )
            self.run_side_effects(subscription, persisted)
        return persisted

    def run_side_effects(self, subscription: Subscription, decision: TransitionDecision) -> None:
        effects = decision.side_effects
        if SideEffect.SET_BILLING_SCHEDULE in effects and subscription.next_billing_date is None:
            self.subscriptions.set_billing_schedule(
                subscription,
                compute_next_billing_date(
                    subscription.frequency,  # type: ignore[arg-type]
                    subscription.frequency_unit,  # type: ignore[arg-type]
                    subscription.activated_at or utc_now(),  # type: ignore[arg-type]
                ),
            )
        if SideEffect.CANCEL_DUPLICATES in effects:
            self.resolver.resolve(subscription.user_id, subscription.product_id)  # type: ignore[arg-type]
        if SideEffect.NOTIFY_DOWNSTREAM in effects:
            self.notifier.notify(subscription)
