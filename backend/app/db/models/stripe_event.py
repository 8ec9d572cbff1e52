"""StripeWebhookEvent model: the idempotency ledger table."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from app.db.base import Base


class StripeWebhookEvent(Base):
    """One row per applied (or deliberately skipped) Stripe event id.

    Committed together with the account write it belongs to. Removed by the
    retention purge, or by DatabaseIdempotencyLedger.release().
    """

    __tablename__ = "stripe_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=True)
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        default=lambda: datetime.now(UTC),
    )
