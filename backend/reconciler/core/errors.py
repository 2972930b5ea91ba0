"""Error taxonomy for the reconciliation engine.

Every error carries a stable ``code`` that is written to webhook event logs
and run summaries, so operators can filter on it.
"""


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""

    code = "reconciliation_error"
    retryable = False


class SignatureInvalid(ReconciliationError):
    """The webhook signature did not verify (or could not be verified in production)."""

    code = "signature_invalid"


class DuplicateEvent(ReconciliationError):
    """The webhook event was already claimed by another delivery.

    Not a failure: callers acknowledge the delivery without reprocessing it.
    """

    code = "duplicate_event"


class MatchAmbiguous(ReconciliationError):
    """More than one local subscription could correspond to the event."""

    code = "match_ambiguous"


class MatchNotFound(ReconciliationError):
    """No local subscription corresponds to the event."""

    code = "match_not_found"


class ProviderUnavailable(ReconciliationError):
    """The provider API failed transiently and retries were exhausted."""

    code = "provider_unavailable"
    retryable = True


class ProviderRejected(ReconciliationError):
    """The provider API answered with a definitive 4xx."""

    code = "provider_rejected"


class TransitionRejected(ReconciliationError):
    """A state transition guard refused the requested change."""

    code = "transition_rejected"


class StorageConflict(ReconciliationError):
    """A concurrent update changed the row between read and write."""

    code = "storage_conflict"
    retryable = True


class UnknownProviderStatus(ReconciliationError):
    """The provider reported a status with no entry in the status mapping."""

    code = "unknown_provider_status"


RETRYABLE_ERROR_CODES = frozenset(
    {ProviderUnavailable.code, StorageConflict.code, "internal_error"}
)
