class BillingSyncError(Exception):
    """Base exception for the subscription sync service."""

    pass


class VerificationError(BillingSyncError):
    """Raised when a webhook payload fails signature or structural checks.

    Never retried, never partially trusted.
    """

    MISSING_SIGNATURE = "missing_signature"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED_PAYLOAD = "malformed_payload"

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class NormalizationError(BillingSyncError):
    """Raised when a verified event cannot be mapped to a BillingEvent."""

    MISSING_SUBJECT = "missing_subject"

    def __init__(self, reason: str, event_id: str | None = None):
        self.reason = reason
        self.event_id = event_id
        super().__init__(f"{reason} (event {event_id})" if event_id else reason)


class LookupMiss(BillingSyncError):
    """Raised when no local account maps to a Stripe customer id (or the account vanished)."""

    def __init__(self, customer_id: str, account_id: int | None = None):
        self.customer_id = customer_id
        self.account_id = account_id
        if account_id is not None:
            super().__init__(f"Account {account_id} for customer '{customer_id}' no longer exists")
        else:
            super().__init__(f"No account for customer '{customer_id}'")


class DuplicateEventError(BillingSyncError):
    """Raised when an event's ledger row already exists at commit time.

    The surrounding account write is rolled back with it.
    """

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} was already processed")


class TransientError(BillingSyncError):
    """Processing failed for a reason that may clear on redelivery.

    The webhook must NOT be acknowledged so Stripe retries it.
    """

    pass


class TransientStoreError(TransientError):
    """Raised when the account store or ledger stays unreachable after retries."""

    pass


class ProviderUnavailableError(TransientError):
    """Raised when Stripe cannot be queried (network, rate limit, 5xx)."""

    pass


class FatalConfigError(BillingSyncError):
    """Raised at startup when the service cannot verify any event."""

    pass
