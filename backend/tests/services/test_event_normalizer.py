"""Tests for Stripe event normalization."""

from datetime import UTC, datetime

import pytest

from app.core.exceptions import NormalizationError
from app.domain.billing import EventKind
from app.services.event_normalizer import STRIPE_EVENT_KINDS, normalize

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("event_type", "kind"),
    [
        ("customer.subscription.created", EventKind.SUBSCRIPTION_CREATED),
        ("customer.subscription.updated", EventKind.SUBSCRIPTION_UPDATED),
        ("customer.subscription.deleted", EventKind.SUBSCRIPTION_DELETED),
        ("invoice.paid", EventKind.INVOICE_PAID),
        ("invoice.payment_succeeded", EventKind.INVOICE_PAID),
        ("invoice.payment_failed", EventKind.INVOICE_FAILED),
        ("payment_intent.succeeded", EventKind.PAYMENT_SUCCEEDED),
        ("payment_intent.payment_failed", EventKind.PAYMENT_FAILED),
    ],
)
def test_known_types_map_to_kinds(stripe_event, event_type, kind):
    event = normalize(stripe_event("evt_1", event_type, {"id": "obj_1", "customer": "cus_1"}))

    assert event.kind == kind
    assert event.subject_customer_id == "cus_1"
    assert event.provider_type == event_type


def test_every_kind_except_unhandled_has_a_provider_type():
    assert set(STRIPE_EVENT_KINDS.values()) == set(EventKind) - {EventKind.UNHANDLED}


def test_unknown_type_is_unhandled_not_an_error(stripe_event):
    event = normalize(stripe_event("evt_2", "customer.tax_id.created", {"id": "txi_1"}))

    assert event.kind == EventKind.UNHANDLED
    assert event.subject_customer_id is None


def test_subscription_event_subject_ids(stripe_event):
    event = normalize(
        stripe_event(
            "evt_3",
            "customer.subscription.updated",
            {"id": "sub_9", "customer": {"id": "cus_9", "object": "customer"}, "status": "active"},
            created=1_767_225_600,
        )
    )

    assert event.subject_customer_id == "cus_9"
    assert event.subject_subscription_id == "sub_9"
    assert event.occurred_at == datetime(2026, 1, 1, tzinfo=UTC)
    assert event.payload["status"] == "active"


def test_invoice_event_reads_subscription_reference(stripe_event):
    event = normalize(
        stripe_event("evt_4", "invoice.paid", {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"})
    )

    assert event.subject_subscription_id == "sub_1"


def test_invoice_event_reads_nested_parent_subscription(stripe_event):
    invoice = {
        "id": "in_2",
        "customer": "cus_1",
        "parent": {"type": "subscription_details", "subscription_details": {"subscription": "sub_2"}},
    }

    event = normalize(stripe_event("evt_5", "invoice.paid", invoice))

    assert event.subject_subscription_id == "sub_2"


def test_invoice_without_subscription_has_no_subscription_subject(stripe_event):
    event = normalize(stripe_event("evt_6", "invoice.paid", {"id": "in_3", "customer": "cus_1"}))

    assert event.subject_subscription_id is None


@pytest.mark.parametrize(
    "event_type",
    ["customer.subscription.updated", "customer.subscription.deleted", "invoice.paid", "invoice.payment_failed"],
)
def test_missing_customer_fails_for_kinds_that_need_one(stripe_event, event_type):
    with pytest.raises(NormalizationError) as exc_info:
        normalize(stripe_event("evt_7", event_type, {"id": "obj_1", "customer": None}))

    assert exc_info.value.reason == NormalizationError.MISSING_SUBJECT
    assert exc_info.value.event_id == "evt_7"


def test_payment_events_do_not_require_customer(stripe_event):
    event = normalize(stripe_event("evt_8", "payment_intent.succeeded", {"id": "pi_1", "customer": None}))

    assert event.kind == EventKind.PAYMENT_SUCCEEDED
    assert event.subject_customer_id is None
