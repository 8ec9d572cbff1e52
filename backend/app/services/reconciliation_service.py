"""Reconciliation Engine: converge an account's subscription snapshot to Stripe's state.

Stripe is the only authority on which status transitions are legal, so the
engine does not validate transitions. It resolves conflicts:

- Each event id is applied at most once (its ledger claim commits with the
  outcome), in whatever order it arrived. occurred_at is never consulted.
- Each handler overwrites every field it owns with a full snapshot; no partial deltas.
- canceled is terminal for its subscription id. Only a different subscription id
  resets the snapshot.
- The store write is a per-account compare-and-swap. Stripe is queried before
  the write, never while holding it.

A late, previously unseen event can still overwrite a newer snapshot. Stripe
sends full resource snapshots, so this is limited to rare redelivery windows.
"""

from collections.abc import Awaitable, Callable
from dataclasses import replace

import structlog

from app.core.exceptions import DuplicateEventError, LookupMiss
from app.domain.billing import (
    BillingEvent,
    EventKind,
    ReconciliationResult,
    SubscriptionSnapshot,
    SubscriptionStatus,
    canceled_snapshot,
    snapshot_from_subscription,
)
from app.services.account_store import AccountStateStore, SnapshotMutation
from app.services.idempotency_ledger import Admission, LedgerClaim
from app.services.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

Planner = Callable[[BillingEvent], Awaitable[SnapshotMutation | None]]


class ReconciliationEngine:
    def __init__(self, store: AccountStateStore, stripe_client: StripeClient):
        self._store = store
        self._stripe = stripe_client
        # One entry per EventKind; None means the kind never touches the store
        self._planners: dict[EventKind, Planner | None] = {
            EventKind.SUBSCRIPTION_CREATED: self._plan_replace,
            EventKind.SUBSCRIPTION_UPDATED: self._plan_replace,
            EventKind.SUBSCRIPTION_DELETED: self._plan_cancel,
            EventKind.INVOICE_PAID: self._plan_refresh,
            EventKind.INVOICE_FAILED: None,
            EventKind.PAYMENT_SUCCEEDED: None,
            EventKind.PAYMENT_FAILED: None,
            EventKind.UNHANDLED: None,
        }

    @property
    def handled_kinds(self) -> frozenset[EventKind]:
        return frozenset(self._planners)

    async def reconcile(self, event: BillingEvent, claim: LedgerClaim | None = None) -> ReconciliationResult:
        """Apply one admitted event to its account's snapshot.

        Never raises for a missing account: a lookup miss is logged and reported
        as not applied.

        With a ledger claim, the event is recorded exactly when its outcome is
        committed: together with the snapshot write, or alone when nothing is
        written. A claim that loses to a concurrent delivery yields
        reason="duplicate".

        Raises:
            TransientStoreError: account store unreachable after bounded retries
            ProviderUnavailableError: Stripe could not be queried for a refresh
        """
        log = logger.bind(
            event_id=event.id,
            kind=event.kind.value,
            event_type=event.provider_type,
            customer_id=event.subject_customer_id,
        )

        planner = self._planners[event.kind]
        if planner is None:
            reason = "unhandled" if event.kind == EventKind.UNHANDLED else "observability_only"
            log.info("reconcile_no_state_change", reason=reason)
            return await self._settle(
                claim, ReconciliationResult(applied=False, account_id=None, new_status=None, reason=reason)
            )

        try:
            account_id = await self._store.resolve_account(event.subject_customer_id)
        except LookupMiss:
            log.warning("reconcile_lookup_miss")
            return await self._settle(
                claim, ReconciliationResult(applied=False, account_id=None, new_status=None, reason="lookup_miss")
            )

        mutation = await planner(event)
        if mutation is None:
            log.info("reconcile_nothing_to_apply", account_id=account_id)
            return await self._settle(
                claim,
                ReconciliationResult(applied=False, account_id=account_id, new_status=None, reason="no_subscription"),
            )

        try:
            snapshot, written = await self._store.update_snapshot(account_id, mutation, claim)
        except LookupMiss:
            log.warning("reconcile_account_vanished", account_id=account_id)
            return await self._settle(
                claim, ReconciliationResult(applied=False, account_id=account_id, new_status=None, reason="lookup_miss")
            )
        except DuplicateEventError:
            log.info("reconcile_lost_to_concurrent_delivery", account_id=account_id)
            return ReconciliationResult(applied=False, account_id=account_id, new_status=None, reason="duplicate")

        new_status = snapshot.status if snapshot is not None else SubscriptionStatus.NONE
        if not written:
            log.info(
                "reconcile_ignored_terminal",
                account_id=account_id,
                subscription_id=snapshot.subscription_id if snapshot else None,
            )
            return await self._settle(
                claim,
                ReconciliationResult(applied=False, account_id=account_id, new_status=new_status, reason="terminal"),
            )

        log.info(
            "reconcile_applied",
            account_id=account_id,
            subscription_id=snapshot.subscription_id,
            status=new_status.value,
        )
        return ReconciliationResult(applied=True, account_id=account_id, new_status=new_status)

    async def _settle(self, claim: LedgerClaim | None, result: ReconciliationResult) -> ReconciliationResult:
        """Record the claim for an outcome that wrote no snapshot."""
        if claim is None:
            return result
        if await claim.record() == Admission.ALREADY_PROCESSED:
            return replace(result, reason="duplicate")
        return result

    # ── Planners: compute the mutation before touching the store ────

    async def _plan_replace(self, event: BillingEvent) -> SnapshotMutation:
        return _replace_with(snapshot_from_subscription(event.payload), event.id)

    async def _plan_cancel(self, event: BillingEvent) -> SnapshotMutation:
        payload = event.payload
        event_id = event.id

        def mutate(current: SubscriptionSnapshot | None) -> SubscriptionSnapshot:
            return canceled_snapshot(payload, current).stamped(event_id)

        return mutate

    async def _plan_refresh(self, event: BillingEvent) -> SnapshotMutation | None:
        """invoice_paid: refetch the referenced subscription and replace wholesale."""
        if event.subject_subscription_id is None:
            return None
        subscription = await self._stripe.retrieve_subscription(event.subject_subscription_id)
        if subscription is None:
            return None
        return _replace_with(snapshot_from_subscription(subscription), event.id)


def _replace_with(incoming: SubscriptionSnapshot, event_id: str) -> SnapshotMutation:
    def mutate(current: SubscriptionSnapshot | None) -> SubscriptionSnapshot | None:
        if (
            current is not None
            and current.is_terminal
            and current.subscription_id == incoming.subscription_id
        ):
            return None
        return incoming.stamped(event_id)

    return mutate
