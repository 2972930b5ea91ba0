from reconciler.repositories.known_payment_mapping_repository import KnownPaymentMappingRepository
from reconciler.repositories.payment_event_repository import PaymentEventRepository
from reconciler.repositories.scheduler_lease_repository import SchedulerLeaseRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.user_repository import UserRepository
from reconciler.repositories.webhook_event_log_repository import WebhookEventLogRepository

__all__ = [
    "KnownPaymentMappingRepository",
    "PaymentEventRepository",
    "SchedulerLeaseRepository",
    "SubscriptionRepository",
    "UserRepository",
    "WebhookEventLogRepository",
]
