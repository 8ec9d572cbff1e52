"""Webhook pipeline: verify → normalize → claim → reconcile.

Acknowledgment rules (Stripe retries on transport status, not business outcome):
- verification failure: reject (4xx), never retried usefully
- normalization failure, duplicate, unhandled kind, lookup miss: acknowledge
- transient store/provider failure or deadline exceeded: do NOT acknowledge.
  The ledger record only exists once the outcome is committed (database
  ledger) or is released (Redis ledger), so the redelivery is applied.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.exceptions import NormalizationError, TransientError, TransientStoreError, VerificationError
from app.core.logging import delivery_context
from app.domain.billing import BillingEvent, ReconciliationResult
from app.services.account_store import AccountStateStore, build_account_store
from app.services.event_normalizer import normalize
from app.services.idempotency_ledger import IdempotencyLedger, LedgerClaim, build_idempotency_ledger
from app.services.reconciliation_service import ReconciliationEngine
from app.services.stripe_client import StripeClient
from app.services.webhook_verifier import verify

logger = structlog.get_logger(__name__)


class WebhookOutcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    RETRY = "retry"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    event_id: str | None = None
    reason: str = ""
    reconciliation: ReconciliationResult | None = None


class WebhookProcessor:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        engine: ReconciliationEngine,
        webhook_secret: str,
        tolerance_seconds: int | None = 300,
        timeout_seconds: float = 10.0,
    ):
        self._ledger = ledger
        self._engine = engine
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds
        self._timeout = timeout_seconds

    async def process(self, raw_body: bytes, signature_header: str | None) -> WebhookResult:
        """Run one delivery through the pipeline and decide how to answer Stripe."""
        try:
            payload = verify(raw_body, signature_header, self._secret, self._tolerance)
        except VerificationError as exc:
            logger.warning("stripe_webhook_rejected", reason=exc.reason, detail=exc.detail)
            return WebhookResult(WebhookOutcome.REJECTED, reason=exc.reason)

        try:
            event = normalize(payload)
        except NormalizationError as exc:
            # Acknowledge so Stripe stops redelivering a payload we can never use
            logger.warning("stripe_webhook_unusable", event_id=exc.event_id, reason=exc.reason)
            return WebhookResult(WebhookOutcome.ACKNOWLEDGED, event_id=exc.event_id, reason=exc.reason)

        with delivery_context(event.id, event.provider_type, event.kind.value):
            return await self._dispatch(event)

    async def _dispatch(self, event: BillingEvent) -> WebhookResult:
        logger.info("stripe_webhook_received")

        # Taken outside the deadline: a cancelled SET NX could leave a claim nobody releases
        try:
            claim = await self._ledger.claim(event.id, event.provider_type)
        except TransientError as exc:
            logger.error("stripe_webhook_deferred", reason=type(exc).__name__, error=str(exc))
            return WebhookResult(WebhookOutcome.RETRY, event_id=event.id, reason=type(exc).__name__)

        if claim is None:
            logger.info("stripe_duplicate_event_ignored")
            return WebhookResult(WebhookOutcome.ACKNOWLEDGED, event_id=event.id, reason="duplicate")

        try:
            async with asyncio.timeout(self._timeout):
                result = await self._engine.reconcile(event, claim)
        except (TransientError, TimeoutError) as exc:
            reason = "timeout" if isinstance(exc, TimeoutError) else type(exc).__name__
            logger.error("stripe_webhook_deferred", reason=reason, error=str(exc))
            await self._release(claim)
            return WebhookResult(WebhookOutcome.RETRY, event_id=event.id, reason=reason)
        except Exception:
            await self._release(claim)
            raise

        if result.reason == "duplicate":
            logger.info("stripe_duplicate_event_ignored", concurrent=True)
        return WebhookResult(
            WebhookOutcome.ACKNOWLEDGED,
            event_id=event.id,
            reason=result.reason,
            reconciliation=result,
        )

    async def _release(self, claim: LedgerClaim) -> None:
        try:
            await claim.release()
        except TransientStoreError as exc:
            # Redelivery of this event will be treated as a duplicate until the record expires
            logger.error("idempotency_release_failed", error=str(exc))


def build_webhook_processor(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: Redis | None = None,
    store: AccountStateStore | None = None,
) -> WebhookProcessor:
    """Wire the pipeline from settings and the initialized stores."""
    engine = ReconciliationEngine(
        store or build_account_store(settings, session_factory),
        StripeClient(settings.stripe_secret_key),
    )
    ledger = build_idempotency_ledger(settings, session_factory=session_factory, redis_client=redis_client)
    return WebhookProcessor(
        ledger,
        engine,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        timeout_seconds=settings.webhook_processing_timeout_seconds,
    )
