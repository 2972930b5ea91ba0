"""Webhook event log repository for data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reconciler.models.known_payment_mapping import KnownPaymentMapping
from reconciler.models.shared import utc_now
from reconciler.models.webhook_event_log import MatchOutcome, WebhookEventLog, WebhookEventStatus


class WebhookEventLogRepository:
    """Repository for WebhookEventLog model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_event_id(self, event_id: str) -> WebhookEventLog | None:
        return self.db.query(WebhookEventLog).filter(WebhookEventLog.event_id == event_id).first()

    def exists(self, event_id: str) -> bool:
        return (
            self.db.query(func.count(WebhookEventLog.id))
            .filter(WebhookEventLog.event_id == event_id)
            .scalar()
            or 0
        ) > 0

    def insert(
        self,
        event_id: str,
        payload: dict[str, Any],
        event_type: str | None = None,
        action: str | None = None,
        data_id: str | None = None,
    ) -> WebhookEventLog:
        """Insert a received log row and commit.

        Raises IntegrityError when the event id was already claimed.
        """
        log = WebhookEventLog(
            event_id=event_id,
            event_type=event_type,
            action=action,
            data_id=data_id,
            payload=payload,
            status=WebhookEventStatus.RECEIVED.value,
            attempts=1,
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)
        return log

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        status: str | None = None,
        match_outcome: str | None = None,
        event_type: str | None = None,
    ) -> list[WebhookEventLog]:
        """Get event logs with optional filters, newest first."""
        query = self.db.query(WebhookEventLog)
        if status:
            query = query.filter(WebhookEventLog.status == status)
        if match_outcome:
            query = query.filter(WebhookEventLog.match_outcome == match_outcome)
        if event_type:
            query = query.filter(WebhookEventLog.event_type == event_type)
        return (
            query.order_by(WebhookEventLog.received_at.desc()).offset(skip).limit(limit).all()
        )

    def get_retryable_failed(
        self, error_codes: frozenset[str], max_attempts: int, received_after: datetime
    ) -> list[WebhookEventLog]:
        """Failed logs with a retryable error code that still have attempts left."""
        return (
            self.db.query(WebhookEventLog)
            .filter(
                WebhookEventLog.status == WebhookEventStatus.FAILED.value,
                WebhookEventLog.error_code.in_(error_codes),
                WebhookEventLog.attempts < max_attempts,
                WebhookEventLog.received_at >= received_after,
            )
            .order_by(WebhookEventLog.received_at.asc())
            .all()
        )

    def get_unmatched_with_payment_mapping(
        self, event_types: frozenset[str], max_attempts: int, received_after: datetime
    ) -> list[WebhookEventLog]:
        """Unmatched payment events whose payment id has since been added to the memo table."""
        return (
            self.db.query(WebhookEventLog)
            .filter(
                WebhookEventLog.status == WebhookEventStatus.PROCESSED.value,
                WebhookEventLog.match_outcome == MatchOutcome.NOT_FOUND.value,
                func.lower(WebhookEventLog.event_type).in_(event_types),
                WebhookEventLog.data_id.in_(select(KnownPaymentMapping.provider_payment_id)),
                WebhookEventLog.attempts < max_attempts,
                WebhookEventLog.received_at >= received_after,
            )
            .order_by(WebhookEventLog.received_at.asc())
            .all()
        )

    def mark_processed(
        self,
        log: WebhookEventLog,
        match_outcome: str,
        subscription_id: UUID | None = None,
        error_code: str | None = None,
        error_detail: str | None = None,
    ) -> WebhookEventLog:
        log.status = WebhookEventStatus.PROCESSED.value  # type: ignore[assignment]
        log.match_outcome = match_outcome  # type: ignore[assignment]
        log.subscription_id = subscription_id  # type: ignore[assignment]
        log.error_code = error_code  # type: ignore[assignment]
        log.error_detail = error_detail  # type: ignore[assignment]
        log.processed_at = utc_now()  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(log)
        return log

    def mark_failed(self, log: WebhookEventLog, error_code: str, error_detail: str) -> WebhookEventLog:
        log.status = WebhookEventStatus.FAILED.value  # type: ignore[assignment]
        log.error_code = error_code  # type: ignore[assignment]
        log.error_detail = error_detail[:2000]  # type: ignore[assignment]
        log.processed_at = utc_now()  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(log)
        return log

    def increment_attempts(self, log: WebhookEventLog) -> WebhookEventLog:
        log.attempts = (log.attempts or 0) + 1  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(log)
        return log
