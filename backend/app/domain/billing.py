"""Billing domain types: events, subscription snapshots, reconciliation results.

Pure module: no DB access, no network. Stripe objects are treated as plain
mappings (webhook JSON or StripeObject.to_dict()).
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """Closed set of event categories the reconciliation engine understands."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNHANDLED = "unhandled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    NONE = "none"


# Stripe statuses outside our closed set
_STRIPE_STATUS_ALIASES: dict[str, SubscriptionStatus] = {
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.INCOMPLETE,
}


@dataclass(frozen=True)
class BillingEvent:
    """One verified, normalized Stripe notification."""

    id: str
    kind: EventKind
    subject_customer_id: str | None
    occurred_at: datetime | None
    payload: Mapping[str, Any] = field(default_factory=dict)
    subject_subscription_id: str | None = None
    provider_type: str = ""


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str | None
    status: SubscriptionStatus
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    last_applied_event_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def stamped(self, event_id: str) -> "SubscriptionSnapshot":
        """Return a copy recording event_id as the last applied event."""
        return replace(self, last_applied_event_id=event_id)


@dataclass(frozen=True)
class ReconciliationResult:
    applied: bool
    account_id: int | None
    new_status: SubscriptionStatus | None
    reason: str = ""


def map_stripe_status(raw: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the closed status set.

    Unknown values map to INCOMPLETE (not entitled) rather than failing.
    """
    if not raw:
        return SubscriptionStatus.INCOMPLETE
    try:
        status = SubscriptionStatus(raw)
    except ValueError:
        return _STRIPE_STATUS_ALIASES.get(raw, SubscriptionStatus.INCOMPLETE)
    if status == SubscriptionStatus.NONE:
        return SubscriptionStatus.INCOMPLETE
    return status


def from_unix(value: Any) -> datetime | None:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def resource_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be a string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        nested = value.get("id")
        return nested if isinstance(nested, str) and nested else None
    return None


def period_end_of(subscription: Mapping[str, Any]) -> datetime | None:
    """Read current_period_end from the subscription, or from its first item on newer API versions."""
    top_level = from_unix(subscription.get("current_period_end"))
    if top_level is not None:
        return top_level
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if data:
        ends = [from_unix(item.get("current_period_end")) for item in data if isinstance(item, Mapping)]
        ends = [end for end in ends if end is not None]
        if ends:
            return max(ends)
    return None


def snapshot_from_subscription(subscription: Mapping[str, Any]) -> SubscriptionSnapshot:
    """Build a full replacement snapshot from a Stripe subscription object.

    A canceled status always carries cancel_at_period_end=True and no trial end.
    """
    status = map_stripe_status(subscription.get("status"))
    if status == SubscriptionStatus.CANCELED:
        return SubscriptionSnapshot(
            subscription_id=resource_id(subscription.get("id")),
            status=status,
            current_period_end=period_end_of(subscription),
            cancel_at_period_end=True,
            trial_end=None,
        )
    return SubscriptionSnapshot(
        subscription_id=resource_id(subscription.get("id")),
        status=status,
        current_period_end=period_end_of(subscription),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        trial_end=from_unix(subscription.get("trial_end")),
    )


def canceled_snapshot(
    subscription: Mapping[str, Any],
    current: SubscriptionSnapshot | None,
) -> SubscriptionSnapshot:
    """Snapshot for a deleted subscription.

    Period end comes from the payload when present, otherwise it is kept
    from the current snapshot.
    """
    period_end = period_end_of(subscription)
    if period_end is None and current is not None:
        period_end = current.current_period_end
    subscription_id = resource_id(subscription.get("id"))
    if subscription_id is None and current is not None:
        subscription_id = current.subscription_id
    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        status=SubscriptionStatus.CANCELED,
        current_period_end=period_end,
        cancel_at_period_end=True,
        trial_end=None,
    )
