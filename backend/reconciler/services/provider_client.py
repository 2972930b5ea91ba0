"""REST client for the payment provider's payment and subscription (preapproval) APIs.

Every call returns a tagged result instead of raising, so callers decide on
retries and error codes from the tag alone.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Generic, TypeVar

import httpx

from reconciler.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CURRENCY = "BRL"


@dataclass(frozen=True)
class ProviderOk(Generic[T]):
    value: T


@dataclass(frozen=True)
class ProviderNotFound:
    resource: str
    resource_id: str


@dataclass(frozen=True)
class ProviderInvalidRequest:
    status_code: int
    detail: str = ""


@dataclass(frozen=True)
class ProviderTransient:
    detail: str
    attempts: int = 0


ProviderResult = ProviderOk[T] | ProviderNotFound | ProviderInvalidRequest | ProviderTransient


@dataclass
class PaymentDetails:
    id: str
    status: str
    amount: Decimal
    currency: str
    external_reference: str | None = None
    payer_id: str | None = None
    payer_email: str | None = None
    provider_subscription_id: str | None = None
    date_created: datetime | None = None
    date_approved: datetime | None = None
    date_last_updated: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def event_time(self) -> datetime | None:
        return self.date_approved or self.date_last_updated or self.date_created


@dataclass
class SubscriptionDetails:
    id: str
    status: str
    external_reference: str | None = None
    payer_id: str | None = None
    payer_email: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    frequency: int | None = None
    frequency_unit: str | None = None
    next_payment_date: datetime | None = None
    date_created: datetime | None = None
    last_modified: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def event_time(self) -> datetime | None:
        return self.last_modified or self.date_created


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable provider timestamp %r", value)
        return None


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_payment(data: dict[str, Any]) -> PaymentDetails:
    payer = data.get("payer") or {}
    metadata = data.get("metadata") or {}
    transaction_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
    return PaymentDetails(
        id=str(data["id"]),
        status=str(data.get("status") or ""),
        amount=_parse_decimal(data.get("transaction_amount")) or Decimal("0"),
        currency=str(data.get("currency_id") or DEFAULT_CURRENCY),
        external_reference=_str_or_none(data.get("external_reference")),
        payer_id=_str_or_none(payer.get("id")),
        payer_email=_str_or_none(payer.get("email")),
        provider_subscription_id=_str_or_none(
            metadata.get("preapproval_id") or transaction_data.get("subscription_id")
        ),
        date_created=_parse_datetime(data.get("date_created")),
        date_approved=_parse_datetime(data.get("date_approved")),
        date_last_updated=_parse_datetime(data.get("date_last_updated")),
        raw=data,
    )


def parse_subscription(data: dict[str, Any]) -> SubscriptionDetails:
    recurring = data.get("auto_recurring") or {}
    frequency = recurring.get("frequency")
    return SubscriptionDetails(
        id=str(data["id"]),
        status=str(data.get("status") or ""),
        external_reference=_str_or_none(data.get("external_reference")),
        payer_id=_str_or_none(data.get("payer_id")),
        payer_email=_str_or_none(data.get("payer_email")),
        amount=_parse_decimal(recurring.get("transaction_amount")),
        currency=_str_or_none(recurring.get("currency_id")),
        frequency=int(frequency) if frequency is not None else None,
        frequency_unit=_str_or_none(recurring.get("frequency_type")),
        next_payment_date=_parse_datetime(data.get("next_payment_date")),
        date_created=_parse_datetime(data.get("date_created")),
        last_modified=_parse_datetime(data.get("last_modified")),
        raw=data,
    )


class PaymentProviderClient:
    """Blocking httpx client with capped exponential backoff on transient failures."""

    def __init__(
        self,
        base_url: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        token = settings.provider_access_token if access_token is None else access_token
        self.max_attempts = max(1, max_attempts or settings.provider_max_attempts)
        self.backoff_base = (
            settings.provider_backoff_base_seconds if backoff_base is None else backoff_base
        )
        self.backoff_max = settings.provider_backoff_max_seconds if backoff_max is None else backoff_max
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url or settings.provider_api_base_url,
            timeout=timeout or settings.provider_timeout_seconds,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PaymentProviderClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def backoff_delay(self, attempt: int) -> float:
        return float(min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1))))

    def _get(
        self, resource: str, resource_id: str, path: str, params: dict[str, Any] | None = None
    ) -> ProviderResult[Any]:
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._client.get(path, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Provider %s %s attempt %d/%d failed: %s",
                    resource,
                    resource_id,
                    attempt,
                    self.max_attempts,
                    last_error,
                )
            else:
                if response.status_code == 404:
                    return ProviderNotFound(resource=resource, resource_id=resource_id)
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Provider %s %s attempt %d/%d returned %s",
                        resource,
                        resource_id,
                        attempt,
                        self.max_attempts,
                        response.status_code,
                    )
                elif response.status_code >= 400:
                    return ProviderInvalidRequest(
                        status_code=response.status_code, detail=response.text[:500]
                    )
                else:
                    try:
                        return ProviderOk(response.json())
                    except ValueError:
                        last_error = "invalid JSON in provider response"

            if attempt < self.max_attempts:
                self._sleep(self.backoff_delay(attempt))

        return ProviderTransient(detail=last_error, attempts=self.max_attempts)

    def fetch_payment(self, payment_id: str) -> ProviderResult[PaymentDetails]:
        result = self._get(
            "payment", payment_id, settings.provider_payment_path.format(id=payment_id)
        )
        if isinstance(result, ProviderOk):
            return ProviderOk(parse_payment(result.value))
        return result

    def fetch_subscription(self, subscription_id: str) -> ProviderResult[SubscriptionDetails]:
        result = self._get(
            "subscription",
            subscription_id,
            settings.provider_subscription_path.format(id=subscription_id),
        )
        if isinstance(result, ProviderOk):
            return ProviderOk(parse_subscription(result.value))
        return result

    def search_subscriptions(self, **criteria: Any) -> ProviderResult[list[SubscriptionDetails]]:
        """Search preapprovals, e.g. ``external_reference=...`` or ``payer_email=...``."""
        params = {key: value for key, value in criteria.items() if value is not None}
        result = self._get(
            "subscription_search",
            ",".join(f"{k}={v}" for k, v in params.items()),
            settings.provider_subscription_search_path,
            params=params,
        )
        if isinstance(result, ProviderOk):
            body = result.value or {}
            items = body.get("results", []) if isinstance(body, dict) else []
            return ProviderOk([parse_subscription(item) for item in items])
        return result
