"""Billing routes: Stripe webhook intake and the local subscription view."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.exceptions import LookupMiss, TransientStoreError
from app.domain.billing import SubscriptionStatus
from app.services.account_store import AccountStateStore
from app.services.webhook_processor import WebhookOutcome, WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Return the processor wired at startup (see app.main.lifespan)."""
    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        logger.error("stripe_webhook_processor_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")
    return processor


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Receive a Stripe event.

    200 {"received": true} once the event is applied, deduplicated, or known to
    be unusable. 400 with the failure reason when verification fails. 503 when
    processing hit a transient failure and Stripe should redeliver.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    # Raw bytes: the signature covers the body exactly as sent
    body = await request.body()
    result = await processor.process(body, request.headers.get("stripe-signature"))

    if result.outcome == WebhookOutcome.REJECTED:
        raise HTTPException(status_code=400, detail=result.reason)
    if result.outcome == WebhookOutcome.RETRY:
        raise HTTPException(status_code=503, detail="retry_later")

    return {"received": True}


class SubscriptionStatusResponse(BaseModel):
    account_id: int
    has_subscription: bool
    subscription_id: str | None
    status: SubscriptionStatus
    current_period_end: datetime | None
    cancel_at_period_end: bool
    trial_end: datetime | None
    last_applied_event_id: str | None


def get_account_store(request: Request) -> AccountStateStore:
    """Return the store wired at startup (see app.main.lifespan)."""
    store = getattr(request.app.state, "account_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Account store is not configured")
    return store


@router.get("/billing/accounts/{account_id}/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    account_id: int,
    store: AccountStateStore = Depends(get_account_store),
):
    """Return the account's locally reconciled subscription snapshot. Never calls Stripe."""
    try:
        snapshot = await store.get_snapshot(account_id)
    except LookupMiss:
        raise HTTPException(status_code=404, detail="Account not found")
    except TransientStoreError:
        raise HTTPException(status_code=503, detail="retry_later")

    if snapshot is None:
        return SubscriptionStatusResponse(
            account_id=account_id,
            has_subscription=False,
            subscription_id=None,
            status=SubscriptionStatus.NONE,
            current_period_end=None,
            cancel_at_period_end=False,
            trial_end=None,
            last_applied_event_id=None,
        )

    return SubscriptionStatusResponse(
        account_id=account_id,
        has_subscription=True,
        subscription_id=snapshot.subscription_id,
        status=snapshot.status,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        trial_end=snapshot.trial_end,
        last_applied_event_id=snapshot.last_applied_event_id,
    )
