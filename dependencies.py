"""Construction and lookup of the billing service graph."""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

import config
from billing_models import Plan
from checkout import CheckoutOrchestrator
from checkout_poller import EntitlementPoller
from entitlement_store import EntitlementStore, FirestoreEntitlementStore, InMemoryEntitlementStore
from payment_gateway import StripeGateway
from reconciliation import ReconciliationEngine
from subscription_management import SubscriptionManager
from config import get_logger

logger = get_logger(__name__)


@dataclass
class BillingServices:
    """Clients and services shared by the billing routes."""
    gateway: StripeGateway
    store: EntitlementStore
    engine: ReconciliationEngine
    checkout: CheckoutOrchestrator
    poller: EntitlementPoller
    subscriptions: SubscriptionManager
    webhook_secret: Optional[str]
    webhook_deadline_seconds: float = 20.0


def build_entitlement_store(db, backend: str = config.ENTITLEMENT_STORE_BACKEND) -> EntitlementStore:
    """Select the entitlement store backend."""
    if backend == "memory":
        logger.warning("Using in-memory entitlement store - data is lost on restart")
        return InMemoryEntitlementStore()

    if db is None:
        # Acknowledging webhooks without durable storage would lose them
        raise RuntimeError("Firestore is not available; set ENTITLEMENT_STORE_BACKEND=memory for local runs")
    return FirestoreEntitlementStore(db)


def build_billing_services(db, gateway: Optional[StripeGateway] = None) -> BillingServices:
    """Wire the billing services from configuration."""
    gateway = gateway or StripeGateway(
        secret_key=config.STRIPE_SECRET_KEY,
        timeout_seconds=config.STRIPE_TIMEOUT_SECONDS,
    )
    store = build_entitlement_store(db, config.ENTITLEMENT_STORE_BACKEND)

    return BillingServices(
        gateway=gateway,
        store=store,
        engine=ReconciliationEngine(gateway, store),
        checkout=CheckoutOrchestrator(
            gateway,
            app_base_url=config.APP_BASE_URL,
            price_ids={
                Plan.WEEKLY: config.STRIPE_PRICE_WEEKLY,
                Plan.ANNUAL: config.STRIPE_PRICE_ANNUAL,
            },
            automatic_tax=config.STRIPE_AUTOMATIC_TAX,
        ),
        poller=EntitlementPoller(
            store,
            interval_seconds=config.CHECKOUT_POLL_INTERVAL_SECONDS,
            timeout_seconds=config.CHECKOUT_POLL_TIMEOUT_SECONDS,
        ),
        subscriptions=SubscriptionManager(gateway, store),
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        webhook_deadline_seconds=config.WEBHOOK_DEADLINE_SECONDS,
    )


def get_billing_services(request: Request) -> BillingServices:
    """FastAPI dependency returning the services built at startup."""
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Billing service not initialized")
    return services
