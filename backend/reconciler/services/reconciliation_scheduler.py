"""Polling loop that converges stuck pending subscriptions with provider state.

A run is single-flight across every process sharing the lease backend and
scheduled runs respect a cooldown. Manual runs skip the cooldown and the
enabled flag but still wait their turn on the lease.
"""

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.orm import Session

from reconciler.core import database
from reconciler.core.config import settings
from reconciler.core.errors import RETRYABLE_ERROR_CODES, ReconciliationError
from reconciler.models.shared import as_utc, utc_now
from reconciler.models.subscription import Subscription
from reconciler.repositories.scheduler_lease_repository import SchedulerLeaseRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.webhook_event_log_repository import WebhookEventLogRepository
from reconciler.services.external_reference import parse_external_reference
from reconciler.services.notification_service import ActivationNotifier
from reconciler.services.provider_client import (
    PaymentProviderClient,
    ProviderNotFound,
    SubscriptionDetails,
)
from reconciler.services.side_effects import SideEffectExecutor
from reconciler.services.state_machine import ACTIVE, map_provider_status
from reconciler.services.subscription_matcher import (
    POLLING_STRATEGIES,
    Ambiguous,
    Matched,
    MatchQuery,
    SubscriptionMatcher,
)
from reconciler.services.webhook_ingestor import PAYMENT_EVENT_TYPES, WebhookIngestor, unwrap

logger = logging.getLogger(__name__)

LEASE_NAME = "subscription_reconciliation"


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ALREADY_RUNNING = "already_running"


@dataclass
class RunSummary:
    trigger: str
    status: str = RunStatus.COMPLETED.value
    skipped_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    unresolved: int = 0
    ambiguous: int = 0
    failed: int = 0
    replayed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class SchedulerState:
    enabled: bool = True
    running: bool = False
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_trigger: str | None = None
    last_summary: dict[str, Any] | None = None


class LeaseBackend(Protocol):
    def acquire(self, holder: str, now: datetime, ttl: timedelta) -> bool: ...

    def release(self, holder: str) -> None: ...

    def get_state(self, now: datetime) -> SchedulerState: ...

    def set_enabled(self, enabled: bool) -> None: ...

    def record_start(self, trigger: str, at: datetime) -> None: ...

    def record_finish(self, summary: RunSummary, at: datetime) -> None: ...


class LocalLease:
    """Process-local lease for single-instance deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = SchedulerState()

    def acquire(self, holder: str, now: datetime, ttl: timedelta) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self, holder: str) -> None:
        self._lock.release()

    def get_state(self, now: datetime) -> SchedulerState:
        with self._state_lock:
            return replace(self._state, running=self._lock.locked())

    def set_enabled(self, enabled: bool) -> None:
        with self._state_lock:
            self._state.enabled = enabled

    def record_start(self, trigger: str, at: datetime) -> None:
        with self._state_lock:
            self._state.last_run_started_at = at
            self._state.last_trigger = trigger

    def record_finish(self, summary: RunSummary, at: datetime) -> None:
        with self._state_lock:
            self._state.last_run_finished_at = at
            self._state.last_summary = summary.to_dict()


class DatabaseLease:
    """Row lease with TTL in ``scheduler_leases`` for multi-instance deployments."""

    def __init__(self, name: str = LEASE_NAME, session_factory: Callable[[], Session] | None = None):
        self.name = name
        self._session_factory = session_factory or database.new_session

    def _repo_call(self, fn: Callable[[SchedulerLeaseRepository], Any]) -> Any:
        db = self._session_factory()
        try:
            return fn(SchedulerLeaseRepository(db))
        finally:
            db.close()

    def acquire(self, holder: str, now: datetime, ttl: timedelta) -> bool:
        return self._repo_call(lambda repo: repo.try_acquire(self.name, holder, now, now + ttl))  # type: ignore[no-any-return]

    def release(self, holder: str) -> None:
        self._repo_call(lambda repo: repo.release(self.name, holder))

    def get_state(self, now: datetime) -> SchedulerState:
        def read(repo: SchedulerLeaseRepository) -> SchedulerState:
            lease = repo.get_or_create(self.name)
            expires_at = as_utc(lease.expires_at)  # type: ignore[arg-type]
            return SchedulerState(
                enabled=bool(lease.enabled),
                running=lease.holder is not None and expires_at is not None and expires_at > now,
                last_run_started_at=as_utc(lease.last_run_started_at),  # type: ignore[arg-type]
                last_run_finished_at=as_utc(lease.last_run_finished_at),  # type: ignore[arg-type]
                last_trigger=lease.last_trigger,  # type: ignore[arg-type]
                last_summary=lease.last_summary,  # type: ignore[arg-type]
            )

        return self._repo_call(read)  # type: ignore[no-any-return]

    def set_enabled(self, enabled: bool) -> None:
        self._repo_call(lambda repo: repo.update_state(self.name, enabled=enabled))

    def record_start(self, trigger: str, at: datetime) -> None:
        self._repo_call(
            lambda repo: repo.update_state(self.name, last_run_started_at=at, last_trigger=trigger)
        )

    def record_finish(self, summary: RunSummary, at: datetime) -> None:
        self._repo_call(
            lambda repo: repo.update_state(
                self.name, last_run_finished_at=at, last_summary=summary.to_dict()
            )
        )


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _pick_exact(results: list[SubscriptionDetails], external_reference: str) -> SubscriptionDetails | None:
    """Among provider results carrying our reference prefer an authorized one, then the newest."""
    exact = [d for d in results if d.external_reference == external_reference]
    if not exact:
        return None

    def rank(details: SubscriptionDetails) -> tuple[int, float]:
        try:
            is_active = map_provider_status(details.status) == ACTIVE
        except ReconciliationError:
            is_active = False
        created = as_utc(details.date_created)
        return (1 if is_active else 0, created.timestamp() if created else 0.0)

    return max(exact, key=rank)


def _names_other_subscription(details: SubscriptionDetails, subscription: Subscription) -> bool:
    """True when a well-formed reference on ``details`` belongs to another user or plan."""
    parsed = parse_external_reference(details.external_reference)
    if parsed is None:
        return False
    return parsed.user_id != subscription.user_id or parsed.plan_id != subscription.product_id


class ReconciliationScheduler:
    def __init__(
        self,
        lease: LeaseBackend | None = None,
        session_factory: Callable[[], Session] | None = None,
        provider_factory: Callable[[], PaymentProviderClient] | None = None,
        notifier: ActivationNotifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.lease = lease if lease is not None else DatabaseLease()
        self._session_factory = session_factory or database.new_session
        self._provider_factory = provider_factory or PaymentProviderClient
        self.notifier = notifier
        self._sleep = sleep
        self._clock = clock

    def status(self) -> SchedulerState:
        return self.lease.get_state(self._clock())

    def start(self) -> SchedulerState:
        self.lease.set_enabled(True)
        logger.info("Reconciliation scheduler enabled")
        return self.status()

    def stop(self) -> SchedulerState:
        self.lease.set_enabled(False)
        logger.info("Reconciliation scheduler disabled")
        return self.status()

    def run(self, trigger: RunTrigger = RunTrigger.SCHEDULED) -> RunSummary:
        now = self._clock()
        summary = RunSummary(trigger=trigger.value)

        if trigger == RunTrigger.SCHEDULED:
            state = self.lease.get_state(now)
            if not state.enabled:
                return self._skip(summary, "disabled")
            last_finished = as_utc(state.last_run_finished_at)
            cooldown = timedelta(seconds=settings.reconciliation_cooldown_seconds)
            if last_finished is not None and now - last_finished < cooldown:
                return self._skip(summary, "cooldown")

        holder = _holder_id()
        ttl = timedelta(seconds=settings.reconciliation_lease_ttl_seconds)
        if not self.lease.acquire(holder, now, ttl):
            logger.info("Reconciliation already running, %s run not started", trigger.value)
            summary.status = RunStatus.ALREADY_RUNNING.value
            return summary

        try:
            summary.started_at = now
            self.lease.record_start(trigger.value, now)
            logger.info("Reconciliation run started (%s)", trigger.value)
            self._run_pass(summary, now)
            summary.finished_at = self._clock()
            self.lease.record_finish(summary, summary.finished_at)
            logger.info(
                "Reconciliation run finished: checked=%d updated=%d unchanged=%d "
                "unresolved=%d ambiguous=%d failed=%d replayed=%d",
                summary.checked,
                summary.updated,
                summary.unchanged,
                summary.unresolved,
                summary.ambiguous,
                summary.failed,
                summary.replayed,
            )
        finally:
            self.lease.release(holder)
        return summary

    def _skip(self, summary: RunSummary, reason: str) -> RunSummary:
        logger.debug("Scheduled reconciliation skipped: %s", reason)
        summary.status = RunStatus.SKIPPED.value
        summary.skipped_reason = reason
        return summary

    def _run_pass(self, summary: RunSummary, now: datetime) -> None:
        db = self._session_factory()
        provider = self._provider_factory()
        try:
            subscriptions = SubscriptionRepository(db).get_pending_between(
                created_after=now - timedelta(hours=settings.reconciliation_lookback_hours),
                created_before=now - timedelta(minutes=settings.reconciliation_grace_minutes),
                limit=settings.reconciliation_batch_size,
            )
            delay = settings.reconciliation_item_delay_seconds
            for index, subscription in enumerate(subscriptions):
                if index and delay > 0:
                    self._sleep(delay)
                summary.checked += 1
                subscription_id = subscription.id
                try:
                    outcome = self._reconcile_one(db, provider, subscription)
                except Exception as exc:
                    db.rollback()
                    code = exc.code if isinstance(exc, ReconciliationError) else "internal_error"
                    summary.failed += 1
                    summary.errors.append(f"{subscription_id}: {code}")
                    logger.warning("Reconciliation of subscription %s failed: %s", subscription_id, exc)
                    continue
                setattr(summary, outcome, getattr(summary, outcome) + 1)

            summary.replayed = self._replay_events(db, provider, now)
        finally:
            db.close()
            provider.close()

    def _reconcile_one(
        self, db: Session, provider: PaymentProviderClient, subscription: Subscription
    ) -> str:
        """Reconcile one pending subscription; returns the summary counter to bump."""
        executor = SideEffectExecutor(db, notifier=self.notifier)
        external_reference: str = subscription.external_reference  # type: ignore[assignment]
        candidates: list[SubscriptionDetails]

        if subscription.provider_subscription_id:
            result = provider.fetch_subscription(subscription.provider_subscription_id)  # type: ignore[arg-type]
            if isinstance(result, ProviderNotFound):
                return "unresolved"
            candidates = [unwrap(result)]
        else:
            candidates = unwrap(provider.search_subscriptions(external_reference=external_reference))
            exact = _pick_exact(candidates, external_reference)
            if exact is not None:
                executor.link_provider_subscription(subscription, exact.id)
                candidates = [exact]
            elif subscription.customer_email:
                found = unwrap(provider.search_subscriptions(payer_email=subscription.customer_email))
                candidates = [d for d in found if not _names_other_subscription(d, subscription)]
                if len(candidates) < len(found):
                    logger.info(
                        "Dropped %d email search results referencing another subscription than %s",
                        len(found) - len(candidates),
                        subscription.id,
                    )

        if not candidates:
            return "unresolved"

        matcher = SubscriptionMatcher(db)
        outcome = "unresolved"
        for details in candidates:
            parsed = parse_external_reference(details.external_reference)
            match = matcher.match(
                MatchQuery(
                    external_reference=details.external_reference,
                    provider_subscription_id=details.id,
                    payer_id=details.payer_id,
                    payer_email=details.payer_email,
                    product_id=parsed.plan_id if parsed else subscription.product_id,  # type: ignore[arg-type]
                    event_time=details.date_created,
                ),
                strategies=POLLING_STRATEGIES,
                source="polling",
            )
            if isinstance(match, Ambiguous):
                return "ambiguous"
            if isinstance(match, Matched):
                decision = executor.sync_subscription(match.subscription, details)
                outcome = "updated" if decision.changed else "unchanged"
                if match.subscription.id == subscription.id:
                    break
        return outcome

    def _replay_events(self, db: Session, provider: PaymentProviderClient, now: datetime) -> int:
        """Replay retryable failures and unmatched payments that now have a memo entry."""
        repo = WebhookEventLogRepository(db)
        received_after = now - timedelta(hours=settings.reconciliation_lookback_hours)
        failed = repo.get_retryable_failed(
            RETRYABLE_ERROR_CODES, settings.webhook_replay_max_attempts, received_after
        )
        mapped = repo.get_unmatched_with_payment_mapping(
            PAYMENT_EVENT_TYPES, settings.webhook_replay_max_attempts, received_after
        )
        if not failed and not mapped:
            return 0
        ingestor = WebhookIngestor(db, provider=provider, notifier=self.notifier)
        for log in failed + mapped:
            ingestor.replay(log)
        logger.info(
            "Replayed %d failed and %d newly mapped webhook events", len(failed), len(mapped)
        )
        return len(failed) + len(mapped)


_scheduler: ReconciliationScheduler | None = None


def build_lease() -> LeaseBackend:
    if settings.reconciliation_lease_backend == "local":
        return LocalLease()
    return DatabaseLease()


def get_scheduler() -> ReconciliationScheduler:
    """Process-wide scheduler used by the worker and the internal API."""
    global _scheduler
    if _scheduler is None:
        _scheduler = ReconciliationScheduler(lease=build_lease())
    return _scheduler


def reset_scheduler() -> None:
    global _scheduler
    _scheduler = None
