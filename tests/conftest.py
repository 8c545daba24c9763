import pytest
import sys
import os

# Add the backend directory to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from entitlement_store import InMemoryEntitlementStore
from reconciliation import ReconciliationEngine
from stripe_payloads import NOW, FakeGateway


@pytest.fixture
def mock_verify_firebase_token():
    """Mock function for authentication dependency"""
    return {
        "uid": "u1",
        "email": "test@example.com",
        "decoded_token": {"uid": "u1", "firebase": {"sign_in_provider": "google.com"}}
    }


@pytest.fixture
def gateway():
    """Fake Stripe gateway"""
    return FakeGateway()


@pytest.fixture
def store():
    """In-memory entitlement store pinned to a fixed clock"""
    return InMemoryEntitlementStore(clock=lambda: NOW)


@pytest.fixture
def engine(gateway, store):
    """Reconciliation engine over the fake gateway and in-memory store"""
    return ReconciliationEngine(gateway, store, clock=lambda: NOW)
