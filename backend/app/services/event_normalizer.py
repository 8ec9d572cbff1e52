"""Map verified Stripe events onto internal BillingEvents.

This module is the one place that tracks Stripe's event schema: the type
table below and the per-kind subject extraction.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from app.core.exceptions import NormalizationError
from app.domain.billing import BillingEvent, EventKind, from_unix, resource_id

logger = structlog.get_logger(__name__)

STRIPE_EVENT_KINDS: dict[str, EventKind] = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_FAILED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}

SUBSCRIPTION_KINDS = frozenset({
    EventKind.SUBSCRIPTION_CREATED,
    EventKind.SUBSCRIPTION_UPDATED,
    EventKind.SUBSCRIPTION_DELETED,
})

INVOICE_KINDS = frozenset({EventKind.INVOICE_PAID, EventKind.INVOICE_FAILED})

# Kinds whose effects depend on knowing the customer
SUBJECT_REQUIRED_KINDS = SUBSCRIPTION_KINDS | INVOICE_KINDS


def normalize(payload: Mapping[str, Any]) -> BillingEvent:
    """Convert a verified Stripe event payload to a BillingEvent.

    Unknown event types become EventKind.UNHANDLED instead of failing.

    Raises:
        NormalizationError: missing_subject when a subscription or invoice
            event carries no customer id
    """
    event_id = payload["id"]
    provider_type = payload["type"]
    obj: Mapping[str, Any] = payload["data"]["object"]

    kind = STRIPE_EVENT_KINDS.get(provider_type, EventKind.UNHANDLED)
    if kind == EventKind.UNHANDLED:
        logger.debug("stripe_event_type_unhandled", event_id=event_id, event_type=provider_type)

    customer_id = resource_id(obj.get("customer"))
    subscription_id = _subscription_id_for(kind, obj)

    if kind in SUBJECT_REQUIRED_KINDS and customer_id is None:
        raise NormalizationError(NormalizationError.MISSING_SUBJECT, event_id=event_id)

    return BillingEvent(
        id=event_id,
        kind=kind,
        subject_customer_id=customer_id,
        occurred_at=from_unix(payload.get("created")),
        payload=obj,
        subject_subscription_id=subscription_id,
        provider_type=provider_type,
    )


def _subscription_id_for(kind: EventKind, obj: Mapping[str, Any]) -> str | None:
    if kind in SUBSCRIPTION_KINDS:
        return resource_id(obj.get("id"))
    if kind in INVOICE_KINDS:
        direct = resource_id(obj.get("subscription"))
        if direct is not None:
            return direct
        # Newer API versions nest the subscription under the invoice parent
        parent = obj.get("parent")
        if isinstance(parent, Mapping):
            details = parent.get("subscription_details")
            if isinstance(details, Mapping):
                return resource_id(details.get("subscription"))
    return None
