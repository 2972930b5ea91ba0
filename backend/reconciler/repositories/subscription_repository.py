from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from reconciler.core.errors import StorageConflict
from reconciler.models.shared import as_utc
from reconciler.models.subscription import OPEN_STATUSES, Subscription, SubscriptionStatus
from reconciler.services.state_machine import TransitionDecision, TransitionOutcome


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_by_external_reference(self, external_reference: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.external_reference == external_reference)
            .first()
        )

    def get_by_provider_subscription_id(self, provider_subscription_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.provider_subscription_id == provider_subscription_id)
            .first()
        )

    def get_open_for_user_product(self, user_id: str, product_id: str) -> list[Subscription]:
        """Pending and active subscriptions for one (user, product) pair."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.product_id == product_id,
                Subscription.status.in_(OPEN_STATUSES),
            )
            .order_by(Subscription.created_at.asc())
            .all()
        )

    def get_pending_for_user(self, user_id: str, product_id: str | None = None) -> list[Subscription]:
        query = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.PENDING.value,
        )
        if product_id:
            query = query.filter(Subscription.product_id == product_id)
        return query.all()

    def get_pending_by_email(self, email: str) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                func.lower(Subscription.customer_email) == email.lower(),
                Subscription.status == SubscriptionStatus.PENDING.value,
            )
            .all()
        )

    def get_pending_between(
        self, created_after: datetime, created_before: datetime, limit: int
    ) -> list[Subscription]:
        """Pending subscriptions created inside a window, oldest first."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.PENDING.value,
                Subscription.created_at >= created_after,
                Subscription.created_at <= created_before,
            )
            .order_by(Subscription.created_at.asc())
            .limit(limit)
            .all()
        )

    def get_duplicate_groups(self) -> list[tuple[str, str]]:
        """(user_id, product_id) pairs holding more than one open subscription."""
        rows = (
            self.db.query(Subscription.user_id, Subscription.product_id)
            .filter(Subscription.status.in_(OPEN_STATUSES))
            .group_by(Subscription.user_id, Subscription.product_id)
            .having(func.count(Subscription.id) > 1)
            .all()
        )
        return [(row[0], row[1]) for row in rows]

    def create(
        self,
        external_reference: str,
        user_id: str,
        product_id: str,
        amount: Decimal,
        currency: str,
        frequency: int,
        frequency_unit: str,
        customer_email: str | None = None,
        created_at: datetime | None = None,
    ) -> Subscription:
        subscription = Subscription(
            external_reference=external_reference,
            user_id=user_id,
            product_id=product_id,
            customer_email=customer_email.lower() if customer_email else None,
            amount=amount,
            currency=currency,
            frequency=frequency,
            frequency_unit=frequency_unit,
            status=SubscriptionStatus.PENDING.value,
        )
        if created_at is not None:
            subscription.created_at = created_at
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        return subscription

    def link_provider_subscription(
        self, subscription: Subscription, provider_subscription_id: str, commit: bool = True
    ) -> Subscription:
        if subscription.provider_subscription_id != provider_subscription_id:
            subscription.provider_subscription_id = provider_subscription_id  # type: ignore[assignment]
            if commit:
                self.commit()
        return subscription

    def apply_decision(
        self, subscription: Subscription, decision: TransitionDecision, commit: bool = True
    ) -> Subscription:
        """Persist a state machine decision.

        Status only ever changes through here. Rejected and ignored decisions
        are not persisted.
        """
        if decision.outcome not in (TransitionOutcome.APPLIED, TransitionOutcome.UNCHANGED):
            return subscription
        if subscription.status != decision.previous_status:
            raise StorageConflict(
                f"Subscription {subscription.id} is {subscription.status}, "
                f"decision was made for {decision.previous_status}"
            )

        now = decision.decided_at
        if decision.outcome == TransitionOutcome.APPLIED:
            subscription.status = decision.new_status  # type: ignore[assignment]
            if decision.new_status == SubscriptionStatus.ACTIVE.value and not subscription.activated_at:
                subscription.activated_at = now  # type: ignore[assignment]
            if decision.new_status == SubscriptionStatus.CANCELLED.value:
                subscription.cancelled_at = now  # type: ignore[assignment]
                subscription.cancellation_reason = decision.cancellation_reason  # type: ignore[assignment]

        event_ts = as_utc(decision.event_timestamp) or now
        last_sync = as_utc(subscription.last_sync_at)  # type: ignore[arg-type]
        if last_sync is None or event_ts > last_sync:
            subscription.last_sync_at = event_ts  # type: ignore[assignment]

        if commit:
            self.commit()
        return subscription

    def record_billing(
        self,
        subscription: Subscription,
        amount: Decimal,
        paid_at: datetime,
        next_billing_date: datetime,
    ) -> Subscription:
        """Bump payment counters. Caller commits."""
        subscription.last_billing_date = paid_at  # type: ignore[assignment]
        subscription.next_billing_date = next_billing_date  # type: ignore[assignment]
        subscription.total_payments_count = (subscription.total_payments_count or 0) + 1  # type: ignore[assignment]
        subscription.total_amount_paid = (  # type: ignore[assignment]
            Decimal(str(subscription.total_amount_paid or 0)) + Decimal(str(amount))
        )
        return subscription

    def set_billing_schedule(self, subscription: Subscription, next_billing_date: datetime) -> None:
        subscription.next_billing_date = next_billing_date  # type: ignore[assignment]
        self.commit()

    def commit(self) -> None:
        """Commit, translating optimistic-lock failures into StorageConflict."""
        try:
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            raise StorageConflict(str(exc)) from exc
