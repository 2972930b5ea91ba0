"""Shared test fixtures for all test modules."""

import contextlib
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reconciler.core import database as db_module
from reconciler.core.config import settings
from reconciler.core.database import Base, get_db
from reconciler.models.shared import utc_now
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.user_repository import UserRepository
from reconciler.services import reconciliation_scheduler
from reconciler.services.external_reference import generate_external_reference
from reconciler.services.notification_service import ActivationNotifier
from reconciler.services.provider_client import PaymentProviderClient

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

PROVIDER_BASE_URL = "https://api.provider.test"
NOTIFY_URL = "https://downstream.test/hooks/subscriptions"


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings: development mode, no secrets, no delays."""
    monkeypatch.setattr(settings, "ENVIRONMENT", "development")
    monkeypatch.setattr(settings, "provider_webhook_secret", "")
    monkeypatch.setattr(settings, "webhook_allow_unsigned", True)
    monkeypatch.setattr(settings, "notification_webhook_url", "")
    monkeypatch.setattr(settings, "internal_api_token", "internal-test-token")
    monkeypatch.setattr(settings, "reconciliation_item_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "reconciliation_lease_backend", "database")
    reconciliation_scheduler.reset_scheduler()
    yield settings
    reconciliation_scheduler.reset_scheduler()


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def make_subscription(db_session):
    """Factory for pending subscriptions (and their users)."""

    def _make(
        user_id: str = "user1",
        product_id: str = "plan_basic",
        email: str | None = "buyer@example.com",
        created_at: datetime | None = None,
        amount: str = "49.90",
        frequency: int = 1,
        frequency_unit: str = "months",
        payer_id: str | None = None,
    ):
        users = UserRepository(db_session)
        user = users.get_by_id(user_id)
        if user is None:
            users.create(user_id, email=email, provider_payer_id=payer_id)
        return SubscriptionRepository(db_session).create(
            external_reference=generate_external_reference(user_id, product_id),
            user_id=user_id,
            product_id=product_id,
            amount=Decimal(amount),
            currency="BRL",
            frequency=frequency,
            frequency_unit=frequency_unit,
            customer_email=email,
            created_at=created_at or utc_now() - timedelta(minutes=10),
        )

    return _make


class FakeProviderAPI:
    """In-memory stand-in for the provider REST API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.payments: dict[str, dict[str, Any]] = {}
        self.preapprovals: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None

    def add_payment(
        self,
        payment_id: str,
        status: str = "approved",
        external_reference: str | None = None,
        payer_id: str | None = None,
        payer_email: str | None = "buyer@example.com",
        amount: str = "49.90",
        approved_at: datetime | None = None,
        preapproval_id: str | None = None,
    ) -> dict[str, Any]:
        when = (approved_at or utc_now()).isoformat()
        data: dict[str, Any] = {
            "id": int(payment_id) if payment_id.isdigit() else payment_id,
            "status": status,
            "transaction_amount": float(amount),
            "currency_id": "BRL",
            "external_reference": external_reference,
            "payer": {"id": payer_id, "email": payer_email},
            "date_created": when,
            "date_approved": when if status == "approved" else None,
            "date_last_updated": when,
            "metadata": {"preapproval_id": preapproval_id} if preapproval_id else {},
        }
        self.payments[str(payment_id)] = data
        return data

    def add_preapproval(
        self,
        preapproval_id: str,
        status: str = "authorized",
        external_reference: str | None = None,
        payer_id: str | None = None,
        payer_email: str | None = "buyer@example.com",
        created_at: datetime | None = None,
        modified_at: datetime | None = None,
    ) -> dict[str, Any]:
        created = created_at or utc_now() - timedelta(minutes=9)
        data = {
            "id": preapproval_id,
            "status": status,
            "external_reference": external_reference,
            "payer_id": payer_id,
            "payer_email": payer_email,
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "transaction_amount": 49.9,
                "currency_id": "BRL",
            },
            "date_created": created.isoformat(),
            "last_modified": (modified_at or utc_now()).isoformat(),
        }
        self.preapprovals[preapproval_id] = data
        return data

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "unavailable"})

        path = request.url.path
        if path.startswith("/v1/payments/"):
            payment = self.payments.get(path.rsplit("/", 1)[1])
            if payment is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json=payment)
        if path == "/preapproval/search":
            params = dict(request.url.params)
            results = [
                p
                for p in self.preapprovals.values()
                if all(str(p.get(key)) == value for key, value in params.items())
            ]
            return httpx.Response(200, json={"results": results, "paging": {"total": len(results)}})
        if path.startswith("/preapproval/"):
            preapproval = self.preapprovals.get(path.rsplit("/", 1)[1])
            if preapproval is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json=preapproval)
        return httpx.Response(404)

    def client(self) -> PaymentProviderClient:
        return PaymentProviderClient(
            base_url=PROVIDER_BASE_URL,
            access_token="test-token",
            transport=httpx.MockTransport(self.handler),
            sleep=lambda seconds: None,
        )


@pytest.fixture
def provider_api():
    return FakeProviderAPI()


class NotificationSink:
    """Captures downstream notifications posted by ActivationNotifier."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(204)

    @property
    def events(self) -> list[str]:
        return [r.headers["X-Reconciler-Event"] for r in self.requests]

    def notifier(self) -> ActivationNotifier:
        return ActivationNotifier(
            url=NOTIFY_URL, secret="notify-secret", transport=httpx.MockTransport(self.handler)
        )


@pytest.fixture
def notifications():
    return NotificationSink()
