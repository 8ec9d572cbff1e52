"""Re-export all models so Base.metadata sees them."""

from app.db.models.account import Account
from app.db.models.stripe_event import StripeWebhookEvent

__all__ = [
    "Account",
    "StripeWebhookEvent",
]
