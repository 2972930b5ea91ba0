"""Verification of inbound payment provider webhook signatures."""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from reconciler.core.config import settings

logger = logging.getLogger(__name__)


class SignatureStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNVERIFIABLE = "unverifiable"


@dataclass
class SignatureCheck:
    status: SignatureStatus
    reason: str = ""

    @property
    def accepted(self) -> bool:
        """True when the request may proceed past the signature gate."""
        if self.status == SignatureStatus.VALID:
            return True
        if self.status == SignatureStatus.UNVERIFIABLE:
            return settings.webhook_allow_unsigned and not settings.is_production
        return False


def parse_signature_header(header: str | None) -> tuple[str | None, str | None]:
    """Split ``ts=<unix>,v1=<hex>`` into (ts, v1)."""
    ts = v1 = None
    if not header:
        return ts, v1
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            v1 = value.strip()
    return ts, v1


def resolve_data_id(query_params: dict[str, str], body: dict[str, Any] | None) -> str | None:
    """The resource id: query ``data.id`` first, else the body's ``data.id``."""
    data_id = query_params.get("data.id") or query_params.get("id")
    if not data_id and isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, dict) and data.get("id") is not None:
            data_id = str(data["id"])
    return data_id or None


def build_manifest(data_id: str | None, request_id: str | None, ts: str | None) -> str:
    parts = []
    if data_id:
        # Alphanumeric ids are signed lower-cased
        signed_id = data_id.lower() if data_id.isalnum() else data_id
        parts.append(f"id:{signed_id};")
    if request_id:
        parts.append(f"request-id:{request_id};")
    if ts:
        parts.append(f"ts:{ts};")
    return "".join(parts)


def compute_signature(manifest: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


class SignatureVerifier:
    """HMAC-SHA256 verifier for the provider's ``x-signature`` scheme."""

    def __init__(
        self,
        secret: str | None = None,
        tolerance_seconds: int | None = None,
    ):
        self.secret = settings.provider_webhook_secret if secret is None else secret
        self.tolerance_seconds = (
            settings.webhook_timestamp_tolerance_seconds
            if tolerance_seconds is None
            else tolerance_seconds
        )

    def verify(
        self,
        signature_header: str | None,
        request_id: str | None,
        data_id: str | None,
        now: float | None = None,
    ) -> SignatureCheck:
        if not self.secret:
            check = SignatureCheck(SignatureStatus.UNVERIFIABLE, "no webhook secret configured")
            if check.accepted:
                logger.warning("Accepting unsigned webhook: no webhook secret configured")
            return check

        ts, received = parse_signature_header(signature_header)
        if not ts or not received:
            return SignatureCheck(SignatureStatus.INVALID, "missing signature header parts")

        try:
            ts_value = int(ts)
        except ValueError:
            return SignatureCheck(SignatureStatus.INVALID, "non-numeric signature timestamp")

        # Millisecond timestamps
        ts_seconds = ts_value / 1000 if ts_value > 10**11 else ts_value
        current = time.time() if now is None else now
        if abs(current - ts_seconds) > self.tolerance_seconds:
            return SignatureCheck(SignatureStatus.INVALID, "signature timestamp outside tolerance")

        expected = compute_signature(build_manifest(data_id, request_id, ts), self.secret)
        if not hmac.compare_digest(expected, received.lower()):
            return SignatureCheck(SignatureStatus.INVALID, "signature mismatch")
        return SignatureCheck(SignatureStatus.VALID)
