import asyncio
from unittest.mock import MagicMock

import pytest
import stripe

from billing_errors import (
    GatewayRequestError,
    GatewayUnavailable,
    InvalidCheckoutRequest,
    InvalidPlan,
    PlanUnavailable,
)
from billing_models import GatewaySubscriptionStatus, Plan
from checkout import CheckoutOrchestrator
from payment_gateway import StripeGateway
from stripe_payloads import FakeGateway, subscription_object


def orchestrator(gateway, **kwargs):
    return CheckoutOrchestrator(gateway, app_base_url="https://stars.example/", **kwargs)


class TestCheckoutOrchestrator:
    """Test suite for checkout session creation"""

    def test_session_carries_correlation_metadata(self):
        gateway = FakeGateway()

        session = asyncio.run(orchestrator(gateway).create_checkout("u1", "annual", "u1@example.com"))

        assert session.session_id == "cs_test_1"
        assert session.redirect_url.startswith("https://checkout.stripe.com/")
        params = gateway.checkout_params[0]
        assert params["mode"] == "subscription"
        assert params["metadata"] == {"userId": "u1", "plan": "annual", "type": "astrology_subscription"}
        assert params["subscription_data"]["metadata"] == {"userId": "u1", "plan": "annual"}
        assert params["client_reference_id"] == "u1"
        assert params["customer_email"] == "u1@example.com"
        assert params["success_url"] == "https://stars.example/success?session_id={CHECKOUT_SESSION_ID}"
        assert params["cancel_url"] == "https://stars.example/pricing?cancelled=true"

    def test_catalog_price_when_no_price_id(self):
        params = orchestrator(FakeGateway()).build_session_params("u1", Plan.WEEKLY)

        line_item = params["line_items"][0]
        assert line_item["price_data"]["unit_amount"] == 499
        assert line_item["price_data"]["recurring"] == {"interval": "week"}
        assert line_item["price_data"]["currency"] == "usd"
        assert "customer_email" not in params

    def test_configured_price_id_is_used(self):
        checkout = orchestrator(FakeGateway(), price_ids={Plan.ANNUAL: "price_annual_123"})

        params = checkout.build_session_params("u1", Plan.ANNUAL)

        assert params["line_items"] == [{"price": "price_annual_123", "quantity": 1}]

    def test_plan_is_normalised(self):
        gateway = FakeGateway()
        asyncio.run(orchestrator(gateway).create_checkout("u1", " Weekly "))

        assert gateway.checkout_params[0]["metadata"]["plan"] == "weekly"

    def test_missing_fields(self):
        checkout = orchestrator(FakeGateway())

        with pytest.raises(InvalidCheckoutRequest):
            asyncio.run(checkout.create_checkout(None, "annual"))
        with pytest.raises(InvalidCheckoutRequest):
            asyncio.run(checkout.create_checkout("u1", None))

    def test_unknown_plan(self):
        gateway = FakeGateway()

        with pytest.raises(InvalidPlan):
            asyncio.run(orchestrator(gateway).create_checkout("u1", "monthly"))
        assert gateway.checkout_params == []

    def test_rejected_price_is_plan_unavailable(self):
        gateway = FakeGateway()
        gateway.failure = GatewayRequestError("No such price: 'price_x'", code="resource_missing")

        with pytest.raises(PlanUnavailable):
            asyncio.run(orchestrator(gateway).create_checkout("u1", "annual"))

    def test_gateway_outage_propagates(self):
        gateway = FakeGateway()
        gateway.failure = GatewayUnavailable("timeout")

        with pytest.raises(GatewayUnavailable):
            asyncio.run(orchestrator(gateway).create_checkout("u1", "annual"))


class TestStripeGateway:
    """Test suite for Stripe error translation"""

    def test_unconfigured_gateway(self):
        gateway = StripeGateway(secret_key=None)

        assert not gateway.configured
        with pytest.raises(GatewayRequestError) as exc_info:
            gateway.retrieve_subscription("sub_1")
        assert exc_info.value.code == "not_configured"

    def test_retrieve_subscription_decodes_response(self):
        client = MagicMock()
        client.subscriptions.retrieve.return_value = subscription_object(status="trialing")
        gateway = StripeGateway(client=client)

        subscription = gateway.retrieve_subscription("sub_1")

        client.subscriptions.retrieve.assert_called_once_with("sub_1")
        assert subscription.status == GatewaySubscriptionStatus.TRIALING
        assert subscription.correlated_user_id == "u1"

    def test_connection_error_is_transient(self):
        client = MagicMock()
        client.subscriptions.retrieve.side_effect = stripe.APIConnectionError("Network down")
        gateway = StripeGateway(client=client)

        with pytest.raises(GatewayUnavailable):
            gateway.retrieve_subscription("sub_1")

    def test_rate_limit_is_transient(self):
        client = MagicMock()
        client.checkout.sessions.create.side_effect = stripe.RateLimitError("Too many requests")
        gateway = StripeGateway(client=client)

        with pytest.raises(GatewayUnavailable):
            gateway.create_checkout_session({"mode": "subscription"})

    def test_invalid_request_is_permanent(self):
        client = MagicMock()
        client.subscriptions.retrieve.side_effect = stripe.InvalidRequestError(
            "No such subscription: 'sub_x'", "id", code="resource_missing"
        )
        gateway = StripeGateway(client=client)

        with pytest.raises(GatewayRequestError) as exc_info:
            gateway.retrieve_subscription("sub_x")
        assert exc_info.value.code == "resource_missing"

    def test_portal_session(self):
        client = MagicMock()
        client.billing_portal.sessions.create.return_value = {"id": "bps_1", "url": "https://billing.stripe.com/p/1"}
        gateway = StripeGateway(client=client)

        session = gateway.create_portal_session("cus_1", "https://stars.example/account")

        client.billing_portal.sessions.create.assert_called_once_with(
            params={"customer": "cus_1", "return_url": "https://stars.example/account"}
        )
        assert session.url == "https://billing.stripe.com/p/1"
