import pytest

from billing_models import (
    EntitlementPatch,
    EntitlementRecord,
    EntitlementStatus,
    EntitlementView,
    GatewayInvoice,
    GatewaySubscription,
    Plan,
    parse_plan,
)
from stripe_payloads import NOW, invoice_object, subscription_object


class TestPlans:
    """Test suite for plan identifiers"""

    @pytest.mark.parametrize("raw,expected", [
        ("weekly", Plan.WEEKLY),
        ("ANNUAL", Plan.ANNUAL),
        (" annual ", Plan.ANNUAL),
        ("monthly", None),
        ("", None),
        (None, None),
    ])
    def test_parse_plan(self, raw, expected):
        assert parse_plan(raw) == expected


class TestGatewayObjects:
    """Test suite for decoded Stripe objects"""

    @pytest.mark.parametrize("gateway_status,expected", [
        ("active", EntitlementStatus.ACTIVE),
        ("trialing", EntitlementStatus.TRIALING),
        ("past_due", EntitlementStatus.PAST_DUE),
        ("incomplete", EntitlementStatus.INCOMPLETE),
        ("incomplete_expired", EntitlementStatus.CANCELED),
        ("unpaid", EntitlementStatus.PAYMENT_FAILED),
        ("paused", EntitlementStatus.PAYMENT_FAILED),
        ("canceled", EntitlementStatus.CANCELED),
    ])
    def test_status_mapping(self, gateway_status, expected):
        subscription = GatewaySubscription.model_validate(subscription_object(status=gateway_status))
        assert subscription.entitlement_status == expected

    def test_blank_user_id_is_uncorrelated(self):
        obj = subscription_object()
        obj["metadata"]["userId"] = "   "

        assert GatewaySubscription.model_validate(obj).correlated_user_id is None

    def test_null_metadata(self):
        obj = subscription_object()
        obj["metadata"] = None

        subscription = GatewaySubscription.model_validate(obj)
        assert subscription.correlated_user_id is None
        assert subscription.correlated_plan is None

    def test_invoice_paid_at(self):
        invoice = GatewayInvoice.model_validate(invoice_object())
        assert invoice.paid_at == NOW
        assert invoice.subscription_id == "sub_1"


class TestEntitlementRecord:
    """Test suite for the stored entitlement shape"""

    def test_defaults(self):
        record = EntitlementRecord(user_id="u1")

        assert record.status == EntitlementStatus.NONE
        assert record.plan is None
        assert not record.has_premium_access

    def test_unknown_status_reads_as_none(self):
        record = EntitlementRecord.from_firestore_dict("u1", {"status": "mystery"})
        assert record.status == EntitlementStatus.NONE

    def test_firestore_round_trip_uses_aliases(self):
        record = EntitlementRecord.from_firestore_dict("u1", {
            "status": "active",
            "plan": "annual",
            "gatewayCustomerId": "cus_1",
            "periodEnd": NOW,
        })

        data = record.to_firestore_dict()

        assert data["gatewayCustomerId"] == "cus_1"
        assert data["periodEnd"] == NOW
        assert data["status"] == EntitlementStatus.ACTIVE

    def test_view_reports_premium_access(self):
        record = EntitlementRecord(user_id="u1", status=EntitlementStatus.TRIALING, plan=Plan.WEEKLY)

        view = EntitlementView.from_record(record).model_dump(by_alias=True, mode="json")

        assert view["isPremium"] is True
        assert view["plan"] == "weekly"
        assert view["status"] == "trialing"


class TestEntitlementPatch:
    """Test suite for partial entitlement writes"""

    def test_unset_fields_are_left_out(self):
        patch = EntitlementPatch(status=EntitlementStatus.PAST_DUE, period_end=NOW)

        assert patch.to_firestore_fields() == {"status": "past_due", "periodEnd": NOW}

    def test_explicit_none_is_written(self):
        patch = EntitlementPatch(gateway_subscription_id=None)

        assert patch.to_firestore_fields() == {"gatewaySubscriptionId": None}
