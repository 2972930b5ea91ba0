"""Tests for the polling reconciliation scheduler."""

from datetime import timedelta

import httpx
import pytest

from reconciler.core.config import settings
from reconciler.models.shared import utc_now
from reconciler.models.payment_event import PaymentEvent
from reconciler.repositories.known_payment_mapping_repository import KnownPaymentMappingRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.webhook_event_log_repository import WebhookEventLogRepository
from reconciler.services.provider_client import PaymentProviderClient
from reconciler.services.reconciliation_scheduler import (
    DatabaseLease,
    LocalLease,
    ReconciliationScheduler,
    RunStatus,
    RunTrigger,
    build_lease,
    get_scheduler,
)
from reconciler.services.signature_verifier import SignatureVerifier
from reconciler.services.webhook_ingestor import WebhookIngestor


@pytest.fixture
def scheduler(provider_api, notifications):
    return ReconciliationScheduler(
        lease=DatabaseLease(),
        provider_factory=provider_api.client,
        notifier=notifications.notifier(),
        sleep=lambda seconds: None,
    )


class TestReconcilePass:
    def test_pending_subscription_is_activated(self, db_session, scheduler, make_subscription, provider_api):
        sub = make_subscription()
        provider_api.add_preapproval("pre_1", external_reference=sub.external_reference)

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.status == RunStatus.COMPLETED.value
        assert summary.checked == 1
        assert summary.updated == 1
        db_session.expire_all()
        sub = SubscriptionRepository(db_session).get_by_id(sub.id)
        assert sub.status == "active"
        assert sub.provider_subscription_id == "pre_1"

    def test_authorized_result_preferred_over_newer_pending(
        self, db_session, scheduler, make_subscription, provider_api
    ):
        sub = make_subscription()
        provider_api.add_preapproval(
            "pre_old",
            status="authorized",
            external_reference=sub.external_reference,
            created_at=utc_now() - timedelta(minutes=9),
        )
        provider_api.add_preapproval(
            "pre_new",
            status="pending",
            external_reference=sub.external_reference,
            created_at=utc_now() - timedelta(minutes=8),
        )

        scheduler.run(RunTrigger.MANUAL)

        db_session.expire_all()
        sub = SubscriptionRepository(db_session).get_by_id(sub.id)
        assert sub.provider_subscription_id == "pre_old"
        assert sub.status == "active"

    def test_grace_period_skips_fresh_checkouts(self, scheduler, make_subscription, provider_api):
        sub = make_subscription(created_at=utc_now() - timedelta(minutes=1))
        provider_api.add_preapproval("pre_1", external_reference=sub.external_reference)

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.checked == 0

    def test_lookback_excludes_old_checkouts(self, scheduler, make_subscription):
        make_subscription(created_at=utc_now() - timedelta(days=30))
        assert scheduler.run(RunTrigger.MANUAL).checked == 0

    def test_nothing_at_provider_is_unresolved(self, scheduler, make_subscription):
        make_subscription()
        summary = scheduler.run(RunTrigger.MANUAL)
        assert summary.unresolved == 1
        assert summary.updated == 0

    def test_still_pending_at_provider_is_unchanged(self, scheduler, make_subscription, provider_api):
        sub = make_subscription()
        provider_api.add_preapproval("pre_1", status="pending", external_reference=sub.external_reference)
        assert scheduler.run(RunTrigger.MANUAL).unchanged == 1

    def test_email_fallback(self, db_session, scheduler, make_subscription, provider_api):
        sub = make_subscription()
        provider_api.add_preapproval("pre_1", external_reference=None, payer_email="buyer@example.com")

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.updated == 1
        db_session.expire_all()
        assert SubscriptionRepository(db_session).get_by_id(sub.id).status == "active"

    def test_email_fallback_ignores_other_plans(self, db_session, scheduler, make_subscription, provider_api):
        sub = make_subscription(user_id="user1", product_id="plan_basic")
        provider_api.add_preapproval(
            "pre_premium",
            status="authorized",
            external_reference="SUB-user1-plan_premium-abcd1234",
            payer_email="buyer@example.com",
        )

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.updated == 0
        assert summary.unresolved == 1
        db_session.expire_all()
        sub = SubscriptionRepository(db_session).get_by_id(sub.id)
        assert sub.status == "pending"
        assert sub.provider_subscription_id is None

    def test_email_fallback_uses_plan_from_reference(
        self, db_session, scheduler, make_subscription, provider_api
    ):
        sub = make_subscription(user_id="user1", product_id="plan_basic")
        provider_api.add_preapproval(
            "pre_retry",
            status="authorized",
            external_reference="SUB-user1-plan_basic-zzzz9999",
            payer_email="buyer@example.com",
        )

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.updated == 1
        db_session.expire_all()
        sub = SubscriptionRepository(db_session).get_by_id(sub.id)
        assert sub.status == "active"
        assert sub.provider_subscription_id == "pre_retry"

    def test_linked_subscription_fetched_by_id(self, db_session, scheduler, make_subscription, provider_api):
        sub = make_subscription()
        SubscriptionRepository(db_session).link_provider_subscription(sub, "pre_1")
        provider_api.add_preapproval("pre_1", status="cancelled", external_reference=None)

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.updated == 1
        db_session.expire_all()
        assert SubscriptionRepository(db_session).get_by_id(sub.id).status == "cancelled"
        assert all(r.url.path != "/preapproval/search" for r in provider_api.requests)

    def test_linked_subscription_missing_at_provider(self, db_session, scheduler, make_subscription):
        sub = make_subscription()
        SubscriptionRepository(db_session).link_provider_subscription(sub, "pre_gone")
        assert scheduler.run(RunTrigger.MANUAL).unresolved == 1

    def test_one_failure_does_not_stop_the_run(self, db_session, make_subscription, provider_api):
        bad = make_subscription(user_id="user1", created_at=utc_now() - timedelta(minutes=20))
        good = make_subscription(user_id="user2", email="other@example.com")
        provider_api.add_preapproval(
            "pre_2", external_reference=good.external_reference, payer_email="other@example.com"
        )

        def handler(request):
            if request.url.params.get("external_reference") == bad.external_reference:
                return httpx.Response(500)
            return provider_api.handler(request)

        scheduler = ReconciliationScheduler(
            lease=DatabaseLease(),
            provider_factory=lambda: PaymentProviderClient(
                base_url="https://api.provider.test",
                access_token="t",
                transport=httpx.MockTransport(handler),
                sleep=lambda s: None,
            ),
        )
        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.checked == 2
        assert summary.failed == 1
        assert summary.updated == 1
        assert summary.errors == [f"{bad.id}: provider_unavailable"]

    def test_item_delay_between_subscriptions(self, monkeypatch, provider_api, make_subscription):
        monkeypatch.setattr(settings, "reconciliation_item_delay_seconds", 0.25)
        make_subscription(user_id="user1", created_at=utc_now() - timedelta(minutes=20))
        make_subscription(user_id="user2", email="b2@example.com")
        make_subscription(user_id="user3", email="b3@example.com")
        sleeps = []
        scheduler = ReconciliationScheduler(
            lease=DatabaseLease(), provider_factory=provider_api.client, sleep=sleeps.append
        )

        scheduler.run(RunTrigger.MANUAL)

        assert sleeps == [0.25, 0.25]

    def test_failed_webhooks_are_replayed(self, db_session, scheduler, make_subscription, provider_api):
        sub = make_subscription(created_at=utc_now() - timedelta(days=10))
        provider_api.add_payment("1001", external_reference=sub.external_reference)
        provider_api.fail_status = 503
        WebhookIngestor(
            db_session, provider=provider_api.client(), verifier=SignatureVerifier(secret="")
        ).ingest(b'{"id": "evt-1", "type": "payment", "data": {"id": "1001"}}', {}, {})
        provider_api.fail_status = None

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.replayed == 1
        db_session.expire_all()
        log = WebhookEventLogRepository(db_session).get_by_event_id("evt-1")
        assert log.status == "processed"
        assert log.attempts == 2
        assert SubscriptionRepository(db_session).get_by_id(sub.id).status == "active"

    def test_payment_mapped_after_no_match_is_replayed(
        self, db_session, scheduler, make_subscription, provider_api
    ):
        sub = make_subscription()
        provider_api.add_payment("3003", external_reference=None, payer_email="stranger@example.com")
        result = WebhookIngestor(
            db_session, provider=provider_api.client(), verifier=SignatureVerifier(secret="")
        ).ingest(b'{"id": "evt-3", "type": "payment", "data": {"id": "3003"}}', {}, {})
        assert result.outcome == "not_found"

        assert scheduler.run(RunTrigger.MANUAL).replayed == 0

        KnownPaymentMappingRepository(db_session).create(
            provider_payment_id="3003", subscription_id=sub.id, added_by="ops", reason="no reference"
        )
        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.replayed == 1
        db_session.expire_all()
        log = WebhookEventLogRepository(db_session).get_by_event_id("evt-3")
        assert log.match_outcome == "matched"
        assert log.attempts == 2
        assert SubscriptionRepository(db_session).get_by_id(sub.id).status == "active"
        assert db_session.query(PaymentEvent).count() == 1

        assert scheduler.run(RunTrigger.MANUAL).replayed == 0


class TestRunControl:
    def test_cooldown_applies_to_scheduled_runs(self, scheduler):
        assert scheduler.run(RunTrigger.SCHEDULED).status == RunStatus.COMPLETED.value

        second = scheduler.run(RunTrigger.SCHEDULED)

        assert second.status == RunStatus.SKIPPED.value
        assert second.skipped_reason == "cooldown"

    def test_manual_run_bypasses_cooldown(self, scheduler):
        scheduler.run(RunTrigger.SCHEDULED)
        assert scheduler.run(RunTrigger.MANUAL).status == RunStatus.COMPLETED.value

    def test_stopped_scheduler_skips_scheduled_runs(self, scheduler):
        state = scheduler.stop()
        assert state.enabled is False

        summary = scheduler.run(RunTrigger.SCHEDULED)
        assert summary.status == RunStatus.SKIPPED.value
        assert summary.skipped_reason == "disabled"
        assert scheduler.run(RunTrigger.MANUAL).status == RunStatus.COMPLETED.value

        assert scheduler.start().enabled is True

    def test_held_lease_reports_already_running(self, scheduler):
        now = utc_now()
        assert scheduler.lease.acquire("other-host", now, timedelta(minutes=15))

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.status == RunStatus.ALREADY_RUNNING.value
        assert scheduler.status().running is True

    def test_expired_lease_is_taken_over(self, scheduler):
        assert scheduler.lease.acquire("crashed-host", utc_now() - timedelta(hours=1), timedelta(minutes=15))

        summary = scheduler.run(RunTrigger.MANUAL)

        assert summary.status == RunStatus.COMPLETED.value
        assert scheduler.status().running is False

    def test_status_records_last_run(self, scheduler):
        summary = scheduler.run(RunTrigger.MANUAL)
        state = scheduler.status()

        assert state.last_trigger == "manual"
        assert state.last_run_finished_at is not None
        assert state.last_summary["status"] == "completed"
        assert state.last_summary["started_at"] == summary.started_at.isoformat()

    def test_local_lease_is_single_flight(self, provider_api):
        lease = LocalLease()
        scheduler = ReconciliationScheduler(lease=lease, provider_factory=provider_api.client)
        assert lease.acquire("me", utc_now(), timedelta(minutes=1))
        try:
            assert scheduler.run(RunTrigger.MANUAL).status == RunStatus.ALREADY_RUNNING.value
            assert scheduler.status().running is True
        finally:
            lease.release("me")
        assert scheduler.run(RunTrigger.MANUAL).status == RunStatus.COMPLETED.value

    def test_build_lease_follows_settings(self, monkeypatch):
        assert isinstance(build_lease(), DatabaseLease)
        monkeypatch.setattr(settings, "reconciliation_lease_backend", "local")
        assert isinstance(build_lease(), LocalLease)

    def test_get_scheduler_is_a_singleton(self):
        assert get_scheduler() is get_scheduler()
