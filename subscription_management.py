"""Self-service subscription actions: cancellation and billing portal."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from billing_errors import EntitlementNotFound, NoSubscription
from billing_models import EntitlementRecord, GatewaySubscriptionStatus
from entitlement_store import EntitlementStore
from payment_gateway import StripeGateway
from config import get_logger

logger = get_logger(__name__)

_CANCEL_AT_PERIOD_END = {GatewaySubscriptionStatus.ACTIVE, GatewaySubscriptionStatus.TRIALING}
_ALREADY_CANCELLED = {GatewaySubscriptionStatus.CANCELED, GatewaySubscriptionStatus.UNPAID}


@dataclass(frozen=True)
class CancellationResult:
    message: str
    status: GatewaySubscriptionStatus
    ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "status": self.status.value,
            "endsAt": self.ends_at.isoformat() if self.ends_at else None,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
        }


class SubscriptionManager:
    """Gateway-side subscription changes requested by the user.

    Entitlement fields are not written here; the webhook triggered by the
    change updates them.
    """

    def __init__(self, gateway: StripeGateway, store: EntitlementStore):
        self._gateway = gateway
        self._store = store

    async def _load_record(self, user_id: str) -> EntitlementRecord:
        try:
            return await asyncio.to_thread(self._store.get, user_id)
        except EntitlementNotFound as exc:
            raise NoSubscription("No subscription found for this account") from exc

    async def cancel_subscription(self, user_id: str) -> CancellationResult:
        """Cancel the user's current subscription.

        Paying subscriptions run until the end of the period; unpaid or
        incomplete ones end immediately.
        """
        record = await self._load_record(user_id)
        subscription_id = record.gateway_subscription_id
        if not subscription_id:
            raise NoSubscription("No subscription found for this account")

        subscription = await asyncio.to_thread(self._gateway.retrieve_subscription, subscription_id)
        logger.info(f"Subscription {subscription_id} status: {subscription.status.value}")

        if subscription.status in _ALREADY_CANCELLED:
            return CancellationResult("Subscription is already cancelled", subscription.status)

        if subscription.status in _CANCEL_AT_PERIOD_END:
            result = await asyncio.to_thread(
                self._gateway.update_subscription,
                subscription_id,
                {"cancel_at_period_end": True},
            )
            message = "Subscription will be cancelled at the end of the current billing period"
        else:
            result = await asyncio.to_thread(self._gateway.cancel_subscription, subscription_id)
            message = "Subscription cancelled immediately"

        logger.info(f"Cancellation requested for user {user_id}: {message}")
        return CancellationResult(
            message=message,
            status=result.status,
            ends_at=result.period_end if result.cancel_at_period_end else None,
            cancel_at_period_end=result.cancel_at_period_end,
        )

    async def create_billing_portal(self, user_id: str, return_url: str) -> str:
        """Return a Stripe billing portal URL for the user's customer."""
        record = await self._load_record(user_id)
        if not record.gateway_customer_id:
            raise NoSubscription("No billing account found for this user")

        session = await asyncio.to_thread(
            self._gateway.create_portal_session,
            record.gateway_customer_id,
            return_url,
        )
        return session.url
