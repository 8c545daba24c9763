"""Stripe payment gateway client.

Wraps the Stripe API calls the billing flows need and translates Stripe
errors into the gateway error taxonomy, so callers never see stripe
exception classes.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from billing_errors import GatewayRequestError, GatewayUnavailable
from billing_models import GatewayCheckoutSession, GatewaySubscription
from config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HostedSession:
    """A Stripe-hosted page the user is redirected to."""
    session_id: str
    url: str


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


@contextmanager
def _stripe_call(action: str):
    """Translate Stripe exceptions raised inside the block."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        logger.error(f"Transient Stripe error during {action}: {exc}")
        raise GatewayUnavailable(f"{action} failed: {exc}", code=getattr(exc, "code", None)) from exc
    except stripe.StripeError as exc:
        logger.error(f"Stripe rejected {action}: {exc}")
        raise GatewayRequestError(f"{action} failed: {exc}", code=getattr(exc, "code", None)) from exc


class StripeGateway:
    """Stripe implementation of the payment gateway."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[stripe.StripeClient] = None,
    ):
        """
        Args:
            secret_key: Stripe secret key. Without it every call fails with
                GatewayRequestError.
            timeout_seconds: HTTP timeout for each Stripe request.
            client: Pre-built client, mainly for tests.
        """
        self._client = client
        if self._client is None and secret_key:
            self._client = stripe.StripeClient(
                secret_key,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
                max_network_retries=1,
            )
        if self._client is None:
            logger.warning("STRIPE_SECRET_KEY not configured - gateway calls will fail")

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _require_client(self) -> stripe.StripeClient:
        if self._client is None:
            raise GatewayRequestError("Stripe is not configured", code="not_configured")
        return self._client

    def create_checkout_session(self, params: Dict[str, Any]) -> HostedSession:
        """Create a Stripe checkout session from fully-built parameters."""
        client = self._require_client()
        with _stripe_call("checkout session creation"):
            session = client.checkout.sessions.create(params=params)
        return HostedSession(session_id=session["id"], url=session["url"])

    def retrieve_checkout_session(self, session_id: str) -> GatewayCheckoutSession:
        client = self._require_client()
        with _stripe_call(f"checkout session retrieval ({session_id})"):
            session = client.checkout.sessions.retrieve(session_id)
        return GatewayCheckoutSession.model_validate(_as_dict(session))

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        client = self._require_client()
        with _stripe_call(f"subscription retrieval ({subscription_id})"):
            subscription = client.subscriptions.retrieve(subscription_id)
        return GatewaySubscription.model_validate(_as_dict(subscription))

    def update_subscription(self, subscription_id: str, params: Dict[str, Any]) -> GatewaySubscription:
        client = self._require_client()
        with _stripe_call(f"subscription update ({subscription_id})"):
            subscription = client.subscriptions.update(subscription_id, params=params)
        return GatewaySubscription.model_validate(_as_dict(subscription))

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        client = self._require_client()
        with _stripe_call(f"subscription cancellation ({subscription_id})"):
            subscription = client.subscriptions.cancel(subscription_id)
        return GatewaySubscription.model_validate(_as_dict(subscription))

    def create_portal_session(self, customer_id: str, return_url: str) -> HostedSession:
        """Create a billing portal session for an existing customer."""
        client = self._require_client()
        with _stripe_call("billing portal session creation"):
            session = client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        return HostedSession(session_id=session["id"], url=session["url"])
