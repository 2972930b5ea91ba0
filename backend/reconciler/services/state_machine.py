"""Guarded, idempotent subscription status transitions.

The functions here only decide. Persisting a decision is the job of
``SubscriptionRepository.apply_decision`` and running its side effects is the
job of ``SideEffectExecutor``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from reconciler.core.config import settings
from reconciler.core.errors import UnknownProviderStatus
from reconciler.models.shared import as_utc, utc_now
from reconciler.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

PENDING = SubscriptionStatus.PENDING.value
ACTIVE = SubscriptionStatus.ACTIVE.value
PAUSED = SubscriptionStatus.PAUSED.value
CANCELLED = SubscriptionStatus.CANCELLED.value

# Active and paused share a rank: moving between them is lateral.
STATUS_RANK = {PENDING: 0, ACTIVE: 1, PAUSED: 1, CANCELLED: 2}

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({ACTIVE, CANCELLED}),
    ACTIVE: frozenset({PAUSED, CANCELLED}),
    PAUSED: frozenset({ACTIVE, CANCELLED}),
    CANCELLED: frozenset(),
}

IGNORE = None

PROVIDER_STATUS_MAP: dict[str, str | None] = {
    "authorized": ACTIVE,
    "approved": ACTIVE,
    "active": ACTIVE,
    "pending": PENDING,
    "paused": PAUSED,
    "cancelled": CANCELLED,
    "canceled": CANCELLED,
    "finished": CANCELLED,
    "expired": CANCELLED,
    "in_process": IGNORE,
    "in_mediation": IGNORE,
    "rejected": IGNORE,
    "refunded": IGNORE,
    "charged_back": IGNORE,
}

# A cancelled payment says nothing about the subscription it belongs to.
PAYMENT_STATUS_OVERRIDES: dict[str, str | None] = {
    "cancelled": IGNORE,
    "canceled": IGNORE,
}


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    IGNORED = "ignored"


class SideEffect(str, Enum):
    RECORD_PAYMENT = "record_payment"
    CANCEL_DUPLICATES = "cancel_duplicates"
    NOTIFY_DOWNSTREAM = "notify_downstream"
    SET_BILLING_SCHEDULE = "set_billing_schedule"


@dataclass(frozen=True)
class TransitionDecision:
    subscription_id: UUID | None
    previous_status: str
    new_status: str
    outcome: TransitionOutcome
    side_effects: tuple[SideEffect, ...] = ()
    reason: str = ""
    event_timestamp: datetime | None = None
    cancellation_reason: str | None = None
    decided_at: datetime = field(default_factory=utc_now)

    @property
    def changed(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


def map_provider_status(provider_status: str | None, *, payment: bool = False) -> str | None:
    """Translate a provider status into a local status, or None to ignore it.

    Payment statuses go through a small override table first. Unknown
    statuses raise outside production and are ignored in production.
    """
    status = (provider_status or "").strip().lower()
    if payment and status in PAYMENT_STATUS_OVERRIDES:
        return PAYMENT_STATUS_OVERRIDES[status]
    if status in PROVIDER_STATUS_MAP:
        return PROVIDER_STATUS_MAP[status]
    if settings.is_production:
        logger.warning("Ignoring unknown provider status %r", provider_status)
        return IGNORE
    raise UnknownProviderStatus(f"Unknown provider status: {provider_status!r}")


def is_successful_payment(provider_status: str | None) -> bool:
    return map_provider_status(provider_status, payment=True) == ACTIVE


def _decision(
    subscription: Subscription,
    new_status: str,
    outcome: TransitionOutcome,
    reason: str,
    event_timestamp: datetime | None,
    side_effects: tuple[SideEffect, ...] = (),
    cancellation_reason: str | None = None,
) -> TransitionDecision:
    return TransitionDecision(
        subscription_id=subscription.id,  # type: ignore[arg-type]
        previous_status=subscription.status,  # type: ignore[arg-type]
        new_status=new_status,
        outcome=outcome,
        side_effects=side_effects,
        reason=reason,
        event_timestamp=event_timestamp,
        cancellation_reason=cancellation_reason,
    )


def _transition(
    subscription: Subscription,
    target: str,
    event_timestamp: datetime | None,
    has_payment: bool,
    cancellation_reason: str | None = None,
) -> TransitionDecision:
    current: str = subscription.status  # type: ignore[assignment]
    ts = as_utc(event_timestamp)
    last_sync = as_utc(subscription.last_sync_at)  # type: ignore[arg-type]
    stale = ts is not None and last_sync is not None and ts < last_sync

    if target == current:
        effects = (SideEffect.RECORD_PAYMENT,) if has_payment and target == ACTIVE else ()
        return _decision(
            subscription, current, TransitionOutcome.UNCHANGED, f"already {current}", ts, effects
        )

    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        logger.info(
            "Rejected transition %s -> %s for subscription %s", current, target, subscription.id
        )
        return _decision(
            subscription,
            current,
            TransitionOutcome.REJECTED,
            f"{current} -> {target} is not an allowed transition",
            ts,
        )

    if stale and STATUS_RANK[target] <= STATUS_RANK[current]:
        logger.info(
            "Rejected stale event for subscription %s: %s -> %s (event %s < last sync %s)",
            subscription.id,
            current,
            target,
            ts,
            last_sync,
        )
        return _decision(
            subscription,
            current,
            TransitionOutcome.REJECTED,
            f"stale event cannot move {current} -> {target}",
            ts,
        )

    effects: list[SideEffect] = []
    if target == ACTIVE:
        if has_payment:
            effects.append(SideEffect.RECORD_PAYMENT)
        effects.extend([SideEffect.CANCEL_DUPLICATES, SideEffect.NOTIFY_DOWNSTREAM])
        if subscription.activated_at is None:
            effects.append(SideEffect.SET_BILLING_SCHEDULE)
    else:
        effects.append(SideEffect.NOTIFY_DOWNSTREAM)

    return _decision(
        subscription,
        target,
        TransitionOutcome.APPLIED,
        f"{current} -> {target}",
        ts,
        tuple(effects),
        cancellation_reason=cancellation_reason,
    )


def apply(
    subscription: Subscription,
    provider_status: str | None,
    event_timestamp: datetime | None,
    *,
    has_payment: bool = False,
) -> TransitionDecision:
    """Decide what a provider status observed at ``event_timestamp`` does to a subscription."""
    target = map_provider_status(provider_status, payment=has_payment)
    if target is IGNORE:
        return _decision(
            subscription,
            subscription.status,  # type: ignore[arg-type]
            TransitionOutcome.IGNORED,
            f"provider status {provider_status!r} carries no transition",
            as_utc(event_timestamp),
        )
    cancellation_reason = f"provider:{provider_status}" if target == CANCELLED else None
    return _transition(
        subscription, target, event_timestamp, has_payment, cancellation_reason=cancellation_reason
    )


def confirm_payment(subscription: Subscription, paid_at: datetime | None) -> TransitionDecision:
    """Decision for a successful payment: active unless the subscription is terminal."""
    if subscription.status == CANCELLED:
        return _decision(
            subscription,
            CANCELLED,
            TransitionOutcome.UNCHANGED,
            "payment received for a cancelled subscription",
            as_utc(paid_at),
        )
    return _transition(subscription, ACTIVE, paid_at, has_payment=True)


def cancel(subscription: Subscription, reason: str, at: datetime | None = None) -> TransitionDecision:
    if subscription.status == CANCELLED:
        return _decision(
            subscription, CANCELLED, TransitionOutcome.UNCHANGED, "already cancelled", as_utc(at)
        )
    return _decision(
        subscription,
        CANCELLED,
        TransitionOutcome.APPLIED,
        reason,
        as_utc(at) or utc_now(),
        (SideEffect.NOTIFY_DOWNSTREAM,),
        cancellation_reason=reason,
    )
