from reconciler.models.known_payment_mapping import KnownPaymentMapping
from reconciler.models.payment_event import PaymentEvent
from reconciler.models.scheduler_lease import SchedulerLease
from reconciler.models.subscription import FrequencyUnit, Subscription, SubscriptionStatus
from reconciler.models.user import User
from reconciler.models.webhook_event_log import MatchOutcome, WebhookEventLog, WebhookEventStatus

__all__ = [
    "FrequencyUnit",
    "KnownPaymentMapping",
    "MatchOutcome",
    "PaymentEvent",
    "SchedulerLease",
    "Subscription",
    "SubscriptionStatus",
    "User",
    "WebhookEventLog",
    "WebhookEventStatus",
]
