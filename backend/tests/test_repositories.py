"""Tests for repository behaviour the services rely on."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from reconciler.core.database import new_session
from reconciler.core.errors import StorageConflict
from reconciler.models.shared import as_utc, utc_now
from reconciler.repositories.payment_event_repository import PaymentEventRepository
from reconciler.repositories.scheduler_lease_repository import SchedulerLeaseRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.user_repository import UserRepository
from reconciler.services import state_machine


class TestSubscriptionRepository:
    def test_create_lowercases_email(self, make_subscription):
        sub = make_subscription(email="Mixed@Case.COM")
        assert sub.customer_email == "mixed@case.com"
        assert sub.status == "pending"
        assert sub.version == 1

    def test_duplicate_external_reference_rejected(self, db_session, make_subscription):
        sub = make_subscription()
        repo = SubscriptionRepository(db_session)
        with pytest.raises(IntegrityError):
            repo.create(
                external_reference=sub.external_reference,
                user_id="user1",
                product_id="plan_basic",
                amount=Decimal("1"),
                currency="BRL",
                frequency=1,
                frequency_unit="months",
            )
        db_session.rollback()

    def test_apply_decision_keeps_latest_sync_time(self, db_session, make_subscription):
        sub = make_subscription()
        repo = SubscriptionRepository(db_session)
        now = utc_now()
        repo.apply_decision(sub, state_machine.apply(sub, "authorized", now))
        repo.apply_decision(sub, state_machine.apply(sub, "authorized", now - timedelta(hours=1)))
        assert as_utc(sub.last_sync_at) == now

    def test_apply_decision_refuses_outdated_decision(self, db_session, make_subscription):
        sub = make_subscription()
        repo = SubscriptionRepository(db_session)
        decision = state_machine.apply(sub, "authorized", utc_now())
        repo.apply_decision(sub, state_machine.cancel(sub, reason="user"))
        with pytest.raises(StorageConflict):
            repo.apply_decision(sub, decision)

    def test_rejected_decision_is_not_persisted(self, db_session, make_subscription):
        sub = make_subscription()
        repo = SubscriptionRepository(db_session)
        repo.apply_decision(sub, state_machine.cancel(sub, reason="user"))
        version = sub.version
        repo.apply_decision(sub, state_machine.apply(sub, "authorized", utc_now()))
        assert sub.status == "cancelled"
        assert sub.version == version

    def test_concurrent_update_raises_storage_conflict(self, make_subscription):
        """Test the version column turns a lost update into StorageConflict."""
        sub_id = make_subscription().id
        first = new_session()
        second = new_session()
        try:
            mine = SubscriptionRepository(first).get_by_id(sub_id)
            theirs = SubscriptionRepository(second).get_by_id(sub_id)

            SubscriptionRepository(second).apply_decision(
                theirs, state_machine.cancel(theirs, reason="user")
            )
            with pytest.raises(StorageConflict):
                SubscriptionRepository(first).apply_decision(
                    mine, state_machine.apply(mine, "authorized", utc_now())
                )
        finally:
            first.close()
            second.close()

    def test_pending_between(self, db_session, make_subscription):
        now = utc_now()
        old = make_subscription(user_id="u1", created_at=now - timedelta(hours=3))
        make_subscription(user_id="u2", created_at=now - timedelta(minutes=1))
        make_subscription(user_id="u3", created_at=now - timedelta(days=9))

        found = SubscriptionRepository(db_session).get_pending_between(
            created_after=now - timedelta(days=7), created_before=now - timedelta(minutes=5), limit=10
        )
        assert [s.id for s in found] == [old.id]

    def test_duplicate_groups(self, db_session, make_subscription):
        make_subscription(user_id="u1")
        make_subscription(user_id="u1")
        make_subscription(user_id="u1", product_id="plan_pro")
        assert SubscriptionRepository(db_session).get_duplicate_groups() == [("u1", "plan_basic")]


class TestPaymentEventRepository:
    def test_duplicate_payment_id_raises(self, db_session, make_subscription):
        sub = make_subscription()
        repo = PaymentEventRepository(db_session)
        kwargs = dict(
            provider_payment_id="p1",
            subscription_id=sub.id,
            amount=Decimal("1"),
            currency="BRL",
            status="approved",
            paid_at=utc_now(),
            next_billing_date=None,
        )
        repo.add(**kwargs)
        db_session.commit()
        with pytest.raises(IntegrityError):
            repo.add(**kwargs)
        db_session.rollback()
        assert len(repo.get_by_subscription_id(sub.id)) == 1


class TestUserRepository:
    def test_get_by_email_is_case_insensitive(self, db_session):
        repo = UserRepository(db_session)
        repo.create("u1", email="A@Example.com")
        repo.create("u2", email="a@example.com")
        assert {u.id for u in repo.get_by_email("a@EXAMPLE.com")} == {"u1", "u2"}

    def test_get_or_create_fills_email(self, db_session):
        repo = UserRepository(db_session)
        repo.create("u1")
        assert repo.get_or_create("u1", email="x@example.com").email == "x@example.com"


class TestSchedulerLeaseRepository:
    def test_single_holder(self, db_session):
        repo = SchedulerLeaseRepository(db_session)
        now = utc_now()
        assert repo.try_acquire("job", "a", now, now + timedelta(minutes=5))
        assert not repo.try_acquire("job", "b", now, now + timedelta(minutes=5))
        repo.release("job", "a")
        assert repo.try_acquire("job", "b", now, now + timedelta(minutes=5))

    def test_release_by_other_holder_is_noop(self, db_session):
        repo = SchedulerLeaseRepository(db_session)
        now = utc_now()
        repo.try_acquire("job", "a", now, now + timedelta(minutes=5))
        repo.release("job", "b")
        db_session.expire_all()
        assert repo.get("job").holder == "a"
