"""Account model: local account identity plus its Stripe subscription snapshot."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from app.db.base import Base


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=True)

    # customer id -> account id indirection
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)

    # Subscription snapshot (all NULL until the first subscription event)
    subscription_id = Column(String(255), nullable=True)
    subscription_status = Column(String(50), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    last_applied_event_id = Column(String(255), nullable=True)

    # Compare-and-swap guard for read-modify-write of the snapshot
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
