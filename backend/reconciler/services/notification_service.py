"""Signed downstream notifications for subscription lifecycle changes."""

import hashlib
import hmac
import json
import logging
from typing import Any

import httpx

from reconciler.core.config import settings
from reconciler.models.shared import utc_now
from reconciler.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT_TYPES = {
    SubscriptionStatus.ACTIVE.value: "subscription.activated",
    SubscriptionStatus.PAUSED.value: "subscription.paused",
    SubscriptionStatus.CANCELLED.value: "subscription.cancelled",
}


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a notification payload.

    Args:
        payload_bytes: The raw payload bytes to sign.
        secret: The secret key for HMAC generation.

    Returns:
        Hex-encoded HMAC-SHA256 signature.
    """
    return hmac.new(
        secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()


def build_notification_payload(event_type: str, subscription: Subscription) -> dict[str, Any]:
    return {
        "event": event_type,
        "occurred_at": utc_now().isoformat(),
        "subscription": {
            "id": str(subscription.id),
            "external_reference": subscription.external_reference,
            "provider_subscription_id": subscription.provider_subscription_id,
            "user_id": subscription.user_id,
            "product_id": subscription.product_id,
            "status": subscription.status,
            "cancellation_reason": subscription.cancellation_reason,
        },
    }


class ActivationNotifier:
    """Fire-and-forget POST of lifecycle events to the downstream webhook.

    Failures are logged and swallowed; a transition that already committed is
    never undone because a notification did not go out.
    """

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = settings.notification_webhook_url if url is None else url
        self.secret = settings.notification_secret if secret is None else secret
        self.transport = transport

    def notify(self, subscription: Subscription) -> bool:
        """Send the event matching the subscription's current status."""
        event_type = NOTIFICATION_EVENT_TYPES.get(subscription.status)  # type: ignore[arg-type]
        if event_type is None:
            return False
        if not self.url:
            logger.debug("No notification URL configured, skipping %s", event_type)
            return False

        payload_bytes = json.dumps(
            build_notification_payload(event_type, subscription), default=str
        ).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Reconciler-Event": event_type,
            "X-Reconciler-Signature": generate_hmac_signature(payload_bytes, self.secret),
        }

        try:
            with httpx.Client(timeout=10.0, transport=self.transport) as client:
                resp = client.post(self.url, content=payload_bytes, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification %s failed for subscription %s: %s", event_type, subscription.id, exc
            )
            return False

        if 200 <= resp.status_code < 300:
            return True
        logger.warning(
            "Notification %s for subscription %s returned HTTP %s",
            event_type,
            subscription.id,
            resp.status_code,
        )
        return False
