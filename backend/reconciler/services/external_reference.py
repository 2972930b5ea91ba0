"""Checkout correlation tokens of the form SUB-{userId}-{planId}-{random8}."""

import re
import secrets
from dataclasses import dataclass

# User ids may contain hyphens (UUIDs), plan ids and the token may not.
_REFERENCE_RE = re.compile(
    r"^SUB-(?P<user_id>[A-Za-z0-9][A-Za-z0-9_-]*?)-(?P<plan_id>[A-Za-z0-9_]+)-(?P<token>[A-Za-z0-9]{8})$"
)
_PLAN_ID_RE = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class ExternalReference:
    user_id: str
    plan_id: str
    token: str

    def __str__(self) -> str:
        return f"SUB-{self.user_id}-{self.plan_id}-{self.token}"


def generate_external_reference(user_id: str, plan_id: str) -> str:
    if not user_id:
        raise ValueError("user_id is required")
    if not _PLAN_ID_RE.match(plan_id):
        raise ValueError(f"Invalid plan id for external reference: {plan_id}")
    return str(ExternalReference(user_id=user_id, plan_id=plan_id, token=secrets.token_hex(4)))


def parse_external_reference(value: str | None) -> ExternalReference | None:
    """Parse a reference, returning None when it is absent or malformed."""
    if not value:
        return None
    match = _REFERENCE_RE.match(value.strip())
    if not match:
        return None
    return ExternalReference(**match.groupdict())


def is_well_formed(value: str | None) -> bool:
    return parse_external_reference(value) is not None
