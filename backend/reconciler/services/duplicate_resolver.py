"""Converge (user, product) pairs onto a single open subscription."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.orm import Session

from reconciler.models.shared import as_utc
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.services import state_machine
from reconciler.services.notification_service import ActivationNotifier

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass
class DuplicateResolution:
    user_id: str
    product_id: str
    kept_subscription_id: UUID | None
    cancelled_subscription_ids: list[UUID] = field(default_factory=list)


def _rank(subscription: Subscription) -> tuple[int, datetime, datetime]:
    return (
        1 if subscription.status == SubscriptionStatus.ACTIVE.value else 0,
        as_utc(subscription.last_billing_date) or _EPOCH,  # type: ignore[arg-type]
        as_utc(subscription.created_at) or _EPOCH,  # type: ignore[arg-type]
    )


class DuplicateResolver:
    def __init__(self, db: Session, notifier: ActivationNotifier | None = None):
        self.db = db
        self.subscriptions = SubscriptionRepository(db)
        self.notifier = notifier

    def resolve(self, user_id: str, product_id: str) -> UUID | None:
        """Keep the best open subscription for the pair and cancel the rest.

        Active beats pending, then the latest billing date, then the newest.
        Returns the kept id, or None when the pair has no open subscription.
        """
        return self.resolve_pair(user_id, product_id).kept_subscription_id

    def resolve_pair(self, user_id: str, product_id: str) -> DuplicateResolution:
        candidates = self.subscriptions.get_open_for_user_product(user_id, product_id)
        resolution = DuplicateResolution(user_id=user_id, product_id=product_id, kept_subscription_id=None)
        if not candidates:
            return resolution

        kept = max(candidates, key=_rank)
        resolution.kept_subscription_id = kept.id  # type: ignore[assignment]
        for subscription in candidates:
            if subscription.id == kept.id:
                continue
            decision = state_machine.cancel(subscription, reason=f"duplicate_of:{kept.id}")
            if not decision.changed:
                continue
            self.subscriptions.apply_decision(subscription, decision)
            resolution.cancelled_subscription_ids.append(subscription.id)  # type: ignore[arg-type]
            logger.info(
                "Cancelled duplicate subscription %s (kept %s) for user %s product %s",
                subscription.id,
                kept.id,
                user_id,
                product_id,
            )
            if self.notifier is not None:
                self.notifier.notify(subscription)
        return resolution

    def resolve_all(self) -> list[DuplicateResolution]:
        """Resolve every (user, product) pair that currently has duplicates."""
        return [
            self.resolve_pair(user_id, product_id)
            for user_id, product_id in self.subscriptions.get_duplicate_groups()
        ]
