"""Inbound payment provider webhook processing.

received -> verified -> deduplicated -> matched -> applied -> acknowledged.
Once the event row is durably logged the delivery is always acknowledged;
failures are recorded on the row and retryable ones are replayed later by
the reconciliation scheduler.
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from reconciler.core.errors import (
    MatchAmbiguous,
    MatchNotFound,
    ProviderRejected,
    ProviderUnavailable,
    ReconciliationError,
    StorageConflict,
    TransitionRejected,
)
from reconciler.models.webhook_event_log import MatchOutcome, WebhookEventLog
from reconciler.repositories.webhook_event_log_repository import WebhookEventLogRepository
from reconciler.services.event_deduplicator import EventDeduplicator, event_id_for
from reconciler.services.notification_service import ActivationNotifier
from reconciler.services.provider_client import (
    PaymentProviderClient,
    ProviderInvalidRequest,
    ProviderNotFound,
    ProviderOk,
    ProviderResult,
)
from reconciler.services.side_effects import SideEffectExecutor
from reconciler.services.signature_verifier import SignatureVerifier, resolve_data_id
from reconciler.services.state_machine import TransitionOutcome
from reconciler.services.subscription_matcher import (
    Ambiguous,
    Matched,
    MatchQuery,
    SubscriptionMatcher,
)

logger = logging.getLogger(__name__)

PAYMENT_EVENT_TYPES = frozenset({"payment", "subscription_authorized_payment"})
SUBSCRIPTION_EVENT_TYPES = frozenset({"subscription_preapproval", "preapproval"})

INTERNAL_ERROR_CODE = "internal_error"


@dataclass
class IngestResult:
    status_code: int
    outcome: str
    event_id: str | None = None
    detail: str = ""
    subscription_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "event_id": self.event_id,
            "detail": self.detail,
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
        }


def unwrap(result: ProviderResult[Any]) -> Any:
    """Return the value of a ProviderOk or raise the matching domain error."""
    if isinstance(result, ProviderOk):
        return result.value
    if isinstance(result, ProviderNotFound):
        raise ProviderRejected(f"{result.resource} {result.resource_id} not found at provider")
    if isinstance(result, ProviderInvalidRequest):
        raise ProviderRejected(f"provider rejected request: HTTP {result.status_code} {result.detail}")
    raise ProviderUnavailable(f"provider unavailable after {result.attempts} attempts: {result.detail}")


class WebhookIngestor:
    def __init__(
        self,
        db: Session,
        provider: PaymentProviderClient | None = None,
        verifier: SignatureVerifier | None = None,
        notifier: ActivationNotifier | None = None,
    ):
        self.db = db
        self.provider = provider if provider is not None else PaymentProviderClient()
        self.verifier = verifier if verifier is not None else SignatureVerifier()
        self.deduplicator = EventDeduplicator(db)
        self.logs = WebhookEventLogRepository(db)
        self.matcher = SubscriptionMatcher(db)
        self.executor = SideEffectExecutor(db, notifier=notifier)

    def ingest(
        self, body: bytes, headers: Mapping[str, str], query_params: Mapping[str, str]
    ) -> IngestResult:
        try:
            payload = json.loads(body)
        except ValueError:
            return IngestResult(400, "invalid_payload", detail="Body is not valid JSON")
        if not isinstance(payload, dict):
            return IngestResult(400, "invalid_payload", detail="Body must be a JSON object")

        params = dict(query_params)
        data_id = resolve_data_id(params, payload)
        check = self.verifier.verify(
            headers.get("x-signature"), headers.get("x-request-id"), data_id
        )
        if not check.accepted:
            logger.warning("Rejected webhook signature (%s): %s", check.status.value, check.reason)
            return IngestResult(401, "invalid_signature", detail=check.reason)

        event_type = payload.get("type") or payload.get("topic") or params.get("type") or params.get("topic")
        event_id = event_id_for(payload, data_id)
        log = self.deduplicator.claim(
            event_id,
            payload,
            event_type=event_type,
            action=payload.get("action"),
            data_id=data_id,
        )
        if log is None:
            return IngestResult(200, "duplicate", event_id=event_id)
        return self._process(log)

    def replay(self, log: WebhookEventLog) -> IngestResult:
        """Re-run processing from the stored payload, bypassing signature and dedup gates."""
        self.logs.increment_attempts(log)
        logger.info("Replaying webhook event %s (attempt %d)", log.event_id, log.attempts)
        return self._process(log)

    def _process(self, log: WebhookEventLog) -> IngestResult:
        event_id: str = log.event_id  # type: ignore[assignment]
        retried = False
        while True:
            try:
                return self._handle(log)
            except StorageConflict as exc:
                self.db.rollback()
                if not retried:
                    retried = True
                    logger.info("Storage conflict on event %s, retrying once", event_id)
                    continue
                self.deduplicator.fail(log, exc.code, str(exc))
                return IngestResult(200, "failed", event_id=event_id, detail=exc.code)
            except ReconciliationError as exc:
                self.db.rollback()
                logger.warning("Webhook event %s failed: %s (%s)", event_id, exc, exc.code)
                self.deduplicator.fail(log, exc.code, str(exc))
                return IngestResult(200, "failed", event_id=event_id, detail=exc.code)
            except Exception as exc:
                self.db.rollback()
                logger.exception("Unexpected error processing webhook event %s", event_id)
                self.deduplicator.fail(log, INTERNAL_ERROR_CODE, f"{type(exc).__name__}: {exc}")
                return IngestResult(200, "failed", event_id=event_id, detail=INTERNAL_ERROR_CODE)

    def _handle(self, log: WebhookEventLog) -> IngestResult:
        event_id: str = log.event_id  # type: ignore[assignment]
        event_type = (log.event_type or "").lower()
        data_id: str | None = log.data_id  # type: ignore[assignment]

        if event_type not in PAYMENT_EVENT_TYPES and event_type not in SUBSCRIPTION_EVENT_TYPES:
            self.deduplicator.record(event_id, MatchOutcome.IGNORED.value)
            return IngestResult(200, "ignored", event_id=event_id, detail=f"event type {event_type!r}")
        if not data_id:
            self.deduplicator.record(
                event_id, MatchOutcome.IGNORED.value, error_detail="event carries no data.id"
            )
            return IngestResult(200, "ignored", event_id=event_id, detail="missing data.id")

        if event_type in PAYMENT_EVENT_TYPES:
            payment = unwrap(self.provider.fetch_payment(data_id))
            query = MatchQuery(
                external_reference=payment.external_reference,
                provider_subscription_id=payment.provider_subscription_id,
                provider_payment_id=payment.id,
                payer_id=payment.payer_id,
                payer_email=payment.payer_email,
                event_time=payment.event_time,
            )
        else:
            details = unwrap(self.provider.fetch_subscription(data_id))
            query = MatchQuery(
                external_reference=details.external_reference,
                provider_subscription_id=details.id,
                payer_id=details.payer_id,
                payer_email=details.payer_email,
                event_time=details.event_time,
            )

        result = self.matcher.match(query)
        if isinstance(result, Ambiguous):
            candidates = ", ".join(str(s.id) for s in result.candidates)
            self.deduplicator.record(
                event_id,
                MatchOutcome.AMBIGUOUS.value,
                error_code=MatchAmbiguous.code,
                error_detail=f"{result.strategy.value}: candidates {candidates}",
            )
            return IngestResult(200, "ambiguous", event_id=event_id, detail=result.strategy.value)
        if not isinstance(result, Matched):
            logger.warning(
                "No subscription for webhook event %s (%s %s): %s", event_id, event_type, data_id, query
            )
            self.deduplicator.record(
                event_id,
                MatchOutcome.NOT_FOUND.value,
                error_code=MatchNotFound.code,
                error_detail=f"no subscription matched {query}",
            )
            return IngestResult(200, "not_found", event_id=event_id)

        subscription = result.subscription
        if event_type in PAYMENT_EVENT_TYPES:
            decision = self.executor.sync_payment(subscription, payment)
        else:
            decision = self.executor.sync_subscription(subscription, details)

        rejected = decision.outcome == TransitionOutcome.REJECTED
        self.deduplicator.record(
            event_id,
            MatchOutcome.MATCHED.value,
            subscription_id=subscription.id,
            error_code=TransitionRejected.code if rejected else None,
            error_detail=decision.reason if rejected else None,
        )
        return IngestResult(
            200,
            "processed",
            event_id=event_id,
            detail=decision.outcome.value,
            subscription_id=subscription.id,  # type: ignore[arg-type]
        )
