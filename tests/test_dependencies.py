from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from dependencies import build_billing_services, build_entitlement_store, get_billing_services
from entitlement_store import FirestoreEntitlementStore, InMemoryEntitlementStore
from stripe_payloads import FakeGateway


class TestBuildEntitlementStore:
    """Test suite for store backend selection"""

    def test_memory_backend(self):
        assert isinstance(build_entitlement_store(None, backend="memory"), InMemoryEntitlementStore)

    def test_firestore_backend(self):
        assert isinstance(build_entitlement_store(MagicMock(), backend="firestore"), FirestoreEntitlementStore)

    def test_firestore_backend_without_client(self):
        with pytest.raises(RuntimeError):
            build_entitlement_store(None, backend="firestore")


class TestBuildBillingServices:
    """Test suite for service wiring"""

    def test_services_share_gateway_and_store(self):
        gateway = FakeGateway()

        with patch('dependencies.config.STRIPE_WEBHOOK_SECRET', 'whsec_configured'), \
                patch('dependencies.config.ENTITLEMENT_STORE_BACKEND', 'firestore'):
            services = build_billing_services(MagicMock(), gateway=gateway)

        assert services.gateway is gateway
        assert isinstance(services.store, FirestoreEntitlementStore)
        assert services.webhook_secret == 'whsec_configured'

    def test_lookup_without_startup(self):
        request = MagicMock()
        request.app.state = type('State', (), {})()

        with pytest.raises(HTTPException) as exc_info:
            get_billing_services(request)
        assert exc_info.value.status_code == 503
