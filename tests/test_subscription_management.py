import asyncio
from datetime import timedelta

import pytest

from billing_errors import GatewayUnavailable, NoSubscription
from billing_models import GatewaySubscriptionStatus
from subscription_management import SubscriptionManager
from stripe_payloads import NOW


@pytest.fixture
def manager(gateway, store):
    return SubscriptionManager(gateway, store)


def subscribed(store, subscription_id="sub_1", customer="cus_1"):
    store.upsert_merge("u1", {
        "status": "active",
        "plan": "annual",
        "gatewaySubscriptionId": subscription_id,
        "gatewayCustomerId": customer,
    })


class TestCancelSubscription:
    """Test suite for self-service cancellation"""

    def test_active_subscription_cancels_at_period_end(self, manager, gateway, store):
        period_end = NOW + timedelta(days=100)
        gateway.add_subscription(status="active", period_end=period_end)
        subscribed(store)
        writes = store.write_count

        result = asyncio.run(manager.cancel_subscription("u1"))

        assert gateway.updates == [("sub_1", {"cancel_at_period_end": True})]
        assert gateway.cancelled == []
        assert result.cancel_at_period_end is True
        assert result.ends_at == period_end
        assert result.status == GatewaySubscriptionStatus.ACTIVE
        assert result.to_dict()["endsAt"] == period_end.isoformat()
        # Entitlement follows from the resulting webhook
        assert store.write_count == writes

    def test_incomplete_subscription_cancels_now(self, manager, gateway, store):
        gateway.add_subscription(status="incomplete")
        subscribed(store)

        result = asyncio.run(manager.cancel_subscription("u1"))

        assert gateway.cancelled == ["sub_1"]
        assert result.status == GatewaySubscriptionStatus.CANCELED
        assert result.message == "Subscription cancelled immediately"
        assert result.to_dict()["endsAt"] is None

    def test_already_cancelled(self, manager, gateway, store):
        gateway.add_subscription(status="canceled")
        subscribed(store)

        result = asyncio.run(manager.cancel_subscription("u1"))

        assert result.message == "Subscription is already cancelled"
        assert gateway.updates == []
        assert gateway.cancelled == []

    def test_no_record(self, manager):
        with pytest.raises(NoSubscription):
            asyncio.run(manager.cancel_subscription("u1"))

    def test_record_without_subscription(self, manager, store):
        store.upsert_merge("u1", {"status": "none"})

        with pytest.raises(NoSubscription):
            asyncio.run(manager.cancel_subscription("u1"))

    def test_gateway_outage_propagates(self, manager, gateway, store):
        gateway.add_subscription()
        subscribed(store)
        gateway.failure = GatewayUnavailable("timeout")

        with pytest.raises(GatewayUnavailable):
            asyncio.run(manager.cancel_subscription("u1"))


class TestBillingPortal:
    """Test suite for billing portal sessions"""

    def test_portal_for_customer(self, manager, store):
        subscribed(store, customer="cus_42")

        url = asyncio.run(manager.create_billing_portal("u1", "https://stars.example/account"))

        assert url == "https://billing.stripe.com/p/session/cus_42"

    def test_portal_without_customer(self, manager, store):
        store.upsert_merge("u1", {"status": "none"})

        with pytest.raises(NoSubscription):
            asyncio.run(manager.create_billing_portal("u1", "https://stars.example/account"))
