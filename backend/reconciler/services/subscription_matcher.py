"""Resolve provider events to at most one local subscription.

Strategies run in a fixed order and the first one that produces a result
wins. A strategy that finds several candidates stops the search with
``Ambiguous``: the matcher never guesses.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.orm import Session

from reconciler.core.config import settings
from reconciler.core.metrics import record_match_outcome
from reconciler.models.shared import as_utc, utc_now
from reconciler.models.subscription import Subscription
from reconciler.models.user import User
from reconciler.models.webhook_event_log import MatchOutcome
from reconciler.repositories.known_payment_mapping_repository import KnownPaymentMappingRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.user_repository import UserRepository
from reconciler.services.external_reference import parse_external_reference

logger = logging.getLogger(__name__)


class MatchStrategy(str, Enum):
    EXTERNAL_REFERENCE = "external_reference"
    PROVIDER_SUBSCRIPTION_ID = "provider_subscription_id"
    KNOWN_PAYMENT = "known_payment"
    USER_PRODUCT_RECENCY = "user_product_recency"
    PAYER_EMAIL = "payer_email"


ALL_STRATEGIES: tuple[MatchStrategy, ...] = tuple(MatchStrategy)

# Polling already searched the provider by external reference.
POLLING_STRATEGIES: tuple[MatchStrategy, ...] = (
    MatchStrategy.PROVIDER_SUBSCRIPTION_ID,
    MatchStrategy.KNOWN_PAYMENT,
    MatchStrategy.USER_PRODUCT_RECENCY,
    MatchStrategy.PAYER_EMAIL,
)


@dataclass
class MatchQuery:
    """Whatever correlating data an event carries; any field may be missing."""

    external_reference: str | None = None
    provider_subscription_id: str | None = None
    provider_payment_id: str | None = None
    payer_id: str | None = None
    payer_email: str | None = None
    product_id: str | None = None
    event_time: datetime | None = None


@dataclass
class Matched:
    subscription: Subscription
    strategy: MatchStrategy


@dataclass
class Ambiguous:
    candidates: list[Subscription]
    strategy: MatchStrategy


@dataclass
class NotFound:
    pass


MatchResult = Matched | Ambiguous | NotFound


class SubscriptionMatcher:
    def __init__(self, db: Session, recency_window_minutes: int | None = None):
        self.db = db
        self.subscriptions = SubscriptionRepository(db)
        self.users = UserRepository(db)
        self.mappings = KnownPaymentMappingRepository(db)
        self.recency_window = timedelta(
            minutes=(
                settings.matcher_recency_window_minutes
                if recency_window_minutes is None
                else recency_window_minutes
            )
        )

    def match(
        self,
        query: MatchQuery,
        strategies: Sequence[MatchStrategy] = ALL_STRATEGIES,
        source: str = "webhook",
    ) -> MatchResult:
        handlers = {
            MatchStrategy.EXTERNAL_REFERENCE: self._by_external_reference,
            MatchStrategy.PROVIDER_SUBSCRIPTION_ID: self._by_provider_subscription_id,
            MatchStrategy.KNOWN_PAYMENT: self._by_known_payment,
            MatchStrategy.USER_PRODUCT_RECENCY: self._by_user_product_recency,
            MatchStrategy.PAYER_EMAIL: self._by_payer_email,
        }
        # Order is fixed regardless of the order strategies were passed in.
        for strategy in ALL_STRATEGIES:
            if strategy not in strategies:
                continue
            result = handlers[strategy](query)
            if isinstance(result, Matched):
                logger.debug(
                    "Matched subscription %s via %s", result.subscription.id, strategy.value
                )
                record_match_outcome(source, MatchOutcome.MATCHED.value)
                return result
            if isinstance(result, Ambiguous):
                logger.warning(
                    "Ambiguous match via %s: candidates=%s query=%s",
                    strategy.value,
                    [str(s.id) for s in result.candidates],
                    query,
                )
                record_match_outcome(source, MatchOutcome.AMBIGUOUS.value)
                return result

        logger.info("No subscription matched query=%s", query)
        record_match_outcome(source, MatchOutcome.NOT_FOUND.value)
        return NotFound()

    def _by_external_reference(self, query: MatchQuery) -> MatchResult:
        if not parse_external_reference(query.external_reference):
            return NotFound()
        subscription = self.subscriptions.get_by_external_reference(
            query.external_reference.strip()  # type: ignore[union-attr]
        )
        if subscription:
            return Matched(subscription, MatchStrategy.EXTERNAL_REFERENCE)
        return NotFound()

    def _by_provider_subscription_id(self, query: MatchQuery) -> MatchResult:
        if not query.provider_subscription_id:
            return NotFound()
        subscription = self.subscriptions.get_by_provider_subscription_id(
            query.provider_subscription_id
        )
        if subscription:
            return Matched(subscription, MatchStrategy.PROVIDER_SUBSCRIPTION_ID)
        return NotFound()

    def _by_known_payment(self, query: MatchQuery) -> MatchResult:
        if not query.provider_payment_id:
            return NotFound()
        mapping = self.mappings.get_by_provider_payment_id(query.provider_payment_id)
        if not mapping:
            return NotFound()
        subscription = self.subscriptions.get_by_id(mapping.subscription_id)  # type: ignore[arg-type]
        if subscription:
            return Matched(subscription, MatchStrategy.KNOWN_PAYMENT)
        return NotFound()

    def _resolve_users(self, query: MatchQuery) -> list[User]:
        if query.payer_id:
            user = self.users.get_by_provider_payer_id(query.payer_id)
            if user:
                return [user]
        if query.payer_email:
            users = self.users.get_by_email(query.payer_email)
            if users:
                return users
        parsed = parse_external_reference(query.external_reference)
        if parsed:
            user = self.users.get_by_id(parsed.user_id)
            if user:
                return [user]
        return []

    def _within_window(self, candidates: list[Subscription], event_time: datetime) -> list[Subscription]:
        return [
            s
            for s in candidates
            if s.created_at is not None
            and abs(as_utc(s.created_at) - event_time) <= self.recency_window  # type: ignore[operator, arg-type]
        ]

    def _event_time(self, query: MatchQuery) -> datetime:
        return as_utc(query.event_time) or utc_now()  # type: ignore[return-value]

    def _by_user_product_recency(self, query: MatchQuery) -> MatchResult:
        users = self._resolve_users(query)
        if not users:
            return NotFound()
        product_id = query.product_id
        if not product_id:
            parsed = parse_external_reference(query.external_reference)
            product_id = parsed.plan_id if parsed else None

        candidates: list[Subscription] = []
        for user in users:
            candidates.extend(self.subscriptions.get_pending_for_user(user.id, product_id))  # type: ignore[arg-type]
        recent = self._within_window(candidates, self._event_time(query))
        if len(recent) == 1:
            return Matched(recent[0], MatchStrategy.USER_PRODUCT_RECENCY)
        if len(recent) > 1:
            return Ambiguous(recent, MatchStrategy.USER_PRODUCT_RECENCY)
        return NotFound()

    def _by_payer_email(self, query: MatchQuery) -> MatchResult:
        if not query.payer_email:
            return NotFound()
        candidates = self.subscriptions.get_pending_by_email(query.payer_email)
        if query.product_id:
            candidates = [s for s in candidates if s.product_id == query.product_id]
        recent = self._within_window(candidates, self._event_time(query))
        if len(recent) == 1:
            return Matched(recent[0], MatchStrategy.PAYER_EMAIL)
        if len(recent) > 1:
            return Ambiguous(recent, MatchStrategy.PAYER_EMAIL)
        return NotFound()
