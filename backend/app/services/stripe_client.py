"""Read-only Stripe queries used to refresh a local snapshot wholesale."""

from typing import Any

import stripe
import structlog

from app.core.exceptions import ProviderUnavailableError

logger = structlog.get_logger(__name__)

_TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
    stripe.AuthenticationError,
)


class StripeClient:
    """Query-by-identifier against Stripe. The API key is passed per call, never set globally."""

    def __init__(self, api_key: str):
        self._api_key = api_key

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        """Fetch the current subscription resource.

        Returns:
            The subscription as a dict, or None if Stripe no longer knows it.

        Raises:
            ProviderUnavailableError: Stripe unreachable, rate limited, or erroring
        """
        try:
            subscription = await stripe.Subscription.retrieve_async(subscription_id, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                logger.warning("stripe_subscription_not_found", subscription_id=subscription_id)
                return None
            raise ProviderUnavailableError(f"Stripe rejected subscription lookup: {exc}") from exc
        except _TRANSIENT_STRIPE_ERRORS as exc:
            logger.warning(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderUnavailableError(f"Stripe unavailable: {exc}") from exc

        return subscription.to_dict()
