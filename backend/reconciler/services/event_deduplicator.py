"""Process-once gate for webhook deliveries, arbitrated by the event log's unique key."""

import hashlib
import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciler.models.webhook_event_log import WebhookEventLog
from reconciler.repositories.webhook_event_log_repository import WebhookEventLogRepository

logger = logging.getLogger(__name__)


def fingerprint_event(payload: dict[str, Any], data_id: str | None = None) -> str:
    """Stable id for events that arrive without a provider id."""
    basis = {
        "type": payload.get("type") or payload.get("topic"),
        "action": payload.get("action"),
        "data_id": data_id,
        "date_created": payload.get("date_created"),
    }
    digest = hashlib.sha256(json.dumps(basis, sort_keys=True, default=str).encode()).hexdigest()
    return f"fp_{digest}"


def event_id_for(payload: dict[str, Any], data_id: str | None = None) -> str:
    provider_id = payload.get("id")
    if provider_id not in (None, ""):
        return str(provider_id)
    return fingerprint_event(payload, data_id)


class EventDeduplicator:
    def __init__(self, db: Session):
        self.db = db
        self.logs = WebhookEventLogRepository(db)

    def seen(self, event_id: str) -> bool:
        return self.logs.exists(event_id)

    def claim(
        self,
        event_id: str,
        payload: dict[str, Any],
        event_type: str | None = None,
        action: str | None = None,
        data_id: str | None = None,
    ) -> WebhookEventLog | None:
        """Durably log the delivery, or return None when another delivery owns it."""
        try:
            return self.logs.insert(
                event_id=event_id,
                payload=payload,
                event_type=event_type,
                action=action,
                data_id=data_id,
            )
        except IntegrityError:
            self.db.rollback()
            logger.info("Duplicate webhook delivery for event %s", event_id)
            return None

    def record(
        self,
        event_id: str,
        match_outcome: str,
        subscription_id: Any = None,
        error_code: str | None = None,
        error_detail: str | None = None,
    ) -> WebhookEventLog:
        """Mark a claimed event processed with its match outcome."""
        log = self.logs.get_by_event_id(event_id)
        if log is None:
            raise ValueError(f"Webhook event {event_id} was never claimed")
        return self.logs.mark_processed(
            log,
            match_outcome=match_outcome,
            subscription_id=subscription_id,
            error_code=error_code,
            error_detail=error_detail,
        )

    def fail(self, log: WebhookEventLog, error_code: str, error_detail: str) -> WebhookEventLog:
        return self.logs.mark_failed(log, error_code, error_detail)
