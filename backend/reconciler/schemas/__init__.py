from reconciler.schemas.reconciliation import (
    DuplicateResolutionResponse,
    DuplicateResolveRequest,
    KnownPaymentMappingCreate,
    KnownPaymentMappingResponse,
    RunEnqueuedResponse,
    RunSummaryResponse,
    SchedulerStatusResponse,
)
from reconciler.schemas.subscription import (
    PaymentEventResponse,
    SubscriptionCreate,
    SubscriptionResponse,
)
from reconciler.schemas.webhook_event import WebhookAck, WebhookEventLogResponse

__all__ = [
    "DuplicateResolutionResponse",
    "DuplicateResolveRequest",
    "KnownPaymentMappingCreate",
    "KnownPaymentMappingResponse",
    "PaymentEventResponse",
    "RunEnqueuedResponse",
    "RunSummaryResponse",
    "SchedulerStatusResponse",
    "SubscriptionCreate",
    "SubscriptionResponse",
    "WebhookAck",
    "WebhookEventLogResponse",
]
