"""Checkout session creation for subscription plans."""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from billing_errors import (
    GatewayRequestError,
    InvalidCheckoutRequest,
    InvalidPlan,
    PlanUnavailable,
)
from billing_models import PLAN_CATALOG, Plan, PlanOffer, parse_plan
from payment_gateway import StripeGateway
from config import get_logger

logger = get_logger(__name__)

CHECKOUT_TYPE = "astrology_subscription"


@dataclass(frozen=True)
class CheckoutSession:
    redirect_url: str
    session_id: str


class CheckoutOrchestrator:
    """Opens Stripe checkout sessions that carry userId/plan correlation."""

    def __init__(
        self,
        gateway: StripeGateway,
        app_base_url: str,
        price_ids: Optional[Mapping[Plan, Optional[str]]] = None,
        catalog: Mapping[Plan, PlanOffer] = PLAN_CATALOG,
        automatic_tax: bool = False,
    ):
        self._gateway = gateway
        self._app_base_url = app_base_url.rstrip("/")
        self._price_ids = dict(price_ids or {})
        self._catalog = catalog
        self._automatic_tax = automatic_tax

    def _line_item(self, plan: Plan) -> Dict[str, Any]:
        price_id = self._price_ids.get(plan)
        if price_id:
            return {"price": price_id, "quantity": 1}

        offer = self._catalog.get(plan)
        if offer is None:
            raise PlanUnavailable(f"No price configured for plan {plan.value}")
        return {
            "price_data": {
                "currency": offer.currency,
                "product_data": {"name": offer.name, "description": offer.description},
                "unit_amount": offer.unit_amount,
                "recurring": {"interval": offer.interval},
            },
            "quantity": 1,
        }

    def build_session_params(self, user_id: str, plan: Plan, email: Optional[str] = None) -> Dict[str, Any]:
        """Stripe checkout parameters for a subscription purchase.

        ``userId`` and ``plan`` go on the session and on the subscription,
        because subscription and invoice events only carry the
        subscription's metadata.
        """
        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [self._line_item(plan)],
            "success_url": f"{self._app_base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._app_base_url}/pricing?cancelled=true",
            "client_reference_id": user_id,
            "metadata": {"userId": user_id, "plan": plan.value, "type": CHECKOUT_TYPE},
            "subscription_data": {"metadata": {"userId": user_id, "plan": plan.value}},
            "billing_address_collection": "required",
            "allow_promotion_codes": True,
            "automatic_tax": {"enabled": self._automatic_tax},
        }
        if email:
            params["customer_email"] = email
        return params

    async def create_checkout(self, user_id: Optional[str], plan: Optional[str], email: Optional[str] = None) -> CheckoutSession:
        """Create a checkout session and return where to send the user.

        Raises:
            InvalidCheckoutRequest: ``user_id`` or ``plan`` missing.
            InvalidPlan: ``plan`` is not a supported plan.
            PlanUnavailable: Stripe rejected the price configuration.
            GatewayUnavailable: Stripe unreachable; the caller may retry.
        """
        user_id = str(user_id).strip() if user_id is not None else ""
        if not user_id or not plan:
            raise InvalidCheckoutRequest("Missing required fields: plan and userId")

        selected_plan = parse_plan(plan)
        if selected_plan is None:
            raise InvalidPlan(f"Invalid plan type: {plan}")

        params = self.build_session_params(user_id, selected_plan, email)
        logger.info(f"Creating subscription checkout session for user {user_id}, plan {selected_plan.value}")

        try:
            session = await asyncio.to_thread(self._gateway.create_checkout_session, params)
        except GatewayRequestError as exc:
            raise PlanUnavailable(f"Plan {selected_plan.value} is not available: {exc}") from exc

        logger.info(f"Subscription checkout session created: {session.session_id}")
        return CheckoutSession(redirect_url=session.url, session_id=session.session_id)
