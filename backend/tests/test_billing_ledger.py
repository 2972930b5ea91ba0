"""Tests for idempotent payment recording."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from reconciler.models.payment_event import PaymentEvent
from reconciler.models.shared import as_utc
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.services import state_machine
from reconciler.services.billing_ledger import BillingLedger
from reconciler.services.state_machine import TransitionOutcome

PAID_AT = datetime(2024, 1, 31, 15, 0, tzinfo=UTC)


def _record(db, sub, payment_id="pay-1", status="approved", amount="49.90", paid_at=PAID_AT):
    return BillingLedger(db).record_payment(
        sub,
        provider_payment_id=payment_id,
        amount=Decimal(amount),
        currency="BRL",
        status=status,
        paid_at=paid_at,
    )


class TestBillingLedger:
    def test_first_payment_activates_and_counts(self, db_session, make_subscription):
        sub = make_subscription()
        entry = _record(db_session, sub)

        assert entry.created
        assert entry.decision.outcome == TransitionOutcome.APPLIED
        db_session.refresh(sub)
        assert sub.status == "active"
        assert sub.total_payments_count == 1
        assert Decimal(str(sub.total_amount_paid)) == Decimal("49.90")
        assert as_utc(sub.last_billing_date) == PAID_AT
        assert as_utc(sub.next_billing_date) == datetime(2024, 2, 29, 15, 0, tzinfo=UTC)
        assert sub.activated_at is not None

    def test_same_payment_is_recorded_once(self, db_session, make_subscription):
        sub = make_subscription()
        for _ in range(5):
            _record(db_session, sub)

        db_session.refresh(sub)
        assert db_session.query(PaymentEvent).count() == 1
        assert sub.total_payments_count == 1

    def test_repeat_returns_existing_event(self, db_session, make_subscription):
        sub = make_subscription()
        first = _record(db_session, sub)
        second = _record(db_session, sub)
        assert not second.created
        assert second.decision is None
        assert second.payment_event.id == first.payment_event.id

    def test_recurring_payments_accumulate(self, db_session, make_subscription):
        sub = make_subscription()
        _record(db_session, sub, payment_id="pay-1")
        entry = _record(db_session, sub, payment_id="pay-2")
        assert entry.decision.outcome == TransitionOutcome.UNCHANGED
        db_session.refresh(sub)
        assert sub.total_payments_count == 2
        assert Decimal(str(sub.total_amount_paid)) == Decimal("99.80")

    def test_unsuccessful_payment_is_audit_only(self, db_session, make_subscription):
        sub = make_subscription()
        entry = _record(db_session, sub, status="rejected")

        assert entry.created
        assert entry.decision is None
        assert entry.payment_event.next_billing_date is None
        db_session.refresh(sub)
        assert sub.status == "pending"
        assert sub.total_payments_count == 0

    def test_payment_on_cancelled_subscription_keeps_status(self, db_session, make_subscription):
        sub = make_subscription()
        SubscriptionRepository(db_session).apply_decision(sub, state_machine.cancel(sub, reason="user"))
        entry = _record(db_session, sub)

        assert entry.created
        assert entry.decision.outcome == TransitionOutcome.UNCHANGED
        db_session.refresh(sub)
        assert sub.status == "cancelled"
        assert sub.total_payments_count == 1

    def test_payment_reactivates_paused_subscription(self, db_session, make_subscription):
        sub = make_subscription()
        _record(db_session, sub, payment_id="pay-1")
        repo = SubscriptionRepository(db_session)
        repo.apply_decision(sub, state_machine.apply(sub, "paused", PAID_AT + timedelta(days=1)))
        assert sub.status == "paused"

        entry = _record(db_session, sub, payment_id="pay-2", paid_at=PAID_AT + timedelta(days=2))

        assert entry.decision.outcome == TransitionOutcome.APPLIED
        assert entry.decision.new_status == "active"
        db_session.refresh(sub)
        assert sub.status == "active"
        assert sub.total_payments_count == 2

    def test_concurrent_insert_returns_existing_event(self, db_session, make_subscription):
        sub = make_subscription()
        winner = _record(db_session, sub).payment_event
        ledger = BillingLedger(db_session)
        lookup = ledger.payments.get_by_provider_payment_id
        calls = []

        def racing_lookup(provider_payment_id):
            # The first lookup misses, as it would for a caller racing the winner's commit
            calls.append(provider_payment_id)
            if len(calls) == 1:
                return None
            return lookup(provider_payment_id)

        with patch.object(ledger.payments, "get_by_provider_payment_id", side_effect=racing_lookup):
            entry = ledger.record_payment(
                sub,
                provider_payment_id="pay-1",
                amount=Decimal("49.90"),
                currency="BRL",
                status="approved",
                paid_at=PAID_AT,
            )

        assert not entry.created
        assert entry.decision is None
        assert len(calls) == 2
        assert entry.payment_event.id == winner.id
        assert db_session.query(PaymentEvent).count() == 1
        db_session.refresh(sub)
        assert sub.total_payments_count == 1
