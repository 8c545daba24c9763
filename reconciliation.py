"""Subscription lifecycle reconciliation.

Turns verified Stripe events (and server-side checkout confirmations) into
merge writes on the user's entitlement record. Every call ends in a
ReconcileResult whose outcome the HTTP layer maps to a status code;
nothing escapes as an exception.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from billing_errors import (
    GatewayRequestError,
    GatewayUnavailable,
    SessionOwnershipError,
    StoreUnavailable,
)
from billing_models import (
    BillingEvent,
    BillingEventType,
    EntitlementPatch,
    EntitlementStatus,
    GatewayCheckoutSession,
    GatewaySubscriptionStatus,
    Plan,
)
from entitlement_store import ApplyOutcome, EntitlementStore, EntitlementUpdate
from payment_gateway import StripeGateway
from config import get_logger

logger = get_logger(__name__)

_ENDED_SUBSCRIPTION_STATUSES = {
    GatewaySubscriptionStatus.CANCELED,
    GatewaySubscriptionStatus.INCOMPLETE_EXPIRED,
}


class ReconcileOutcome(str, Enum):
    """How an event or confirmation was handled."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    SUPERSEDED = "superseded"
    IGNORED = "ignored"
    MISSING_METADATA = "missing_metadata"
    REJECTED = "rejected"
    RETRY = "retry"
    FAILED = "failed"

    @property
    def acknowledged(self) -> bool:
        """Whether the gateway should stop redelivering."""
        return self not in (ReconcileOutcome.RETRY, ReconcileOutcome.FAILED)


_APPLY_OUTCOMES = {
    ApplyOutcome.APPLIED: ReconcileOutcome.APPLIED,
    ApplyOutcome.DUPLICATE: ReconcileOutcome.DUPLICATE,
    ApplyOutcome.STALE: ReconcileOutcome.STALE,
    ApplyOutcome.SUPERSEDED: ReconcileOutcome.SUPERSEDED,
}


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    user_id: Optional[str] = None
    message: str = ""
    status: Optional[EntitlementStatus] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _present(**fields: Any) -> Dict[str, Any]:
    """Drop None values so they are left out of the merge."""
    return {key: value for key, value in fields.items() if value is not None}


class ReconciliationEngine:
    """Applies gateway events to entitlement records."""

    def __init__(
        self,
        gateway: StripeGateway,
        store: EntitlementStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._gateway = gateway
        self._store = store
        self._clock = clock
        self._handlers: Dict[BillingEventType, Callable[[BillingEvent], Awaitable[ReconcileResult]]] = {
            BillingEventType.CHECKOUT_COMPLETED: self._checkout_completed,
            BillingEventType.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED: self._checkout_completed,
            BillingEventType.SUBSCRIPTION_CREATED: self._subscription_created,
            BillingEventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            BillingEventType.SUBSCRIPTION_DELETED: self._subscription_deleted,
            BillingEventType.INVOICE_PAYMENT_SUCCEEDED: self._invoice_paid,
            BillingEventType.INVOICE_PAID: self._invoice_paid,
            BillingEventType.INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
        }

    async def process(self, event: BillingEvent) -> ReconcileResult:
        """Reconcile one verified webhook event."""
        logger.info(f"Processing billing event {event.event_type} (id={event.event_id})")

        handler = self._handlers.get(event.kind)
        if handler is None or event.payload is None:
            logger.info(f"Unhandled event type: {event.event_type}")
            return ReconcileResult(ReconcileOutcome.IGNORED, message=f"Unhandled event type {event.event_type}")

        return await self._classify(handler(event), f"{event.event_type} ({event.event_id})")

    async def confirm_checkout(self, session_id: str, user_id: str) -> ReconcileResult:
        """Activate from a checkout session the client just returned from.

        The session is fetched from Stripe rather than trusted from the
        client, and must belong to ``user_id``.

        Raises:
            SessionOwnershipError: The session was opened for another user.
        """
        return await self._classify(
            self._confirm_checkout(session_id, user_id),
            f"checkout confirmation ({session_id})",
        )

    async def _classify(self, work: Awaitable[ReconcileResult], label: str) -> ReconcileResult:
        try:
            return await work
        except SessionOwnershipError:
            raise
        except (GatewayUnavailable, StoreUnavailable) as exc:
            logger.error(f"Transient error handling {label}: {exc}")
            return ReconcileResult(ReconcileOutcome.RETRY, message=str(exc))
        except GatewayRequestError as exc:
            logger.error(f"Permanent gateway error handling {label}: {exc}")
            return ReconcileResult(ReconcileOutcome.REJECTED, message=str(exc))
        except Exception as exc:
            logger.exception(f"Unexpected error handling {label}: {exc}")
            return ReconcileResult(ReconcileOutcome.FAILED, message="Processing failed")

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def _checkout_completed(self, event: BillingEvent) -> ReconcileResult:
        session: GatewayCheckoutSession = event.payload
        user_id = session.correlated_user_id
        plan = session.correlated_plan

        if not user_id or not plan:
            return self._missing_metadata(event, f"checkout session {session.id} metadata={session.metadata}")

        if not session.payment_confirmed:
            logger.info(f"Checkout session {session.id} not paid yet (payment_status={session.payment_status})")
            return ReconcileResult(ReconcileOutcome.IGNORED, user_id=user_id, message="Payment not confirmed")

        return await self._activate_from_session(
            session,
            user_id,
            plan,
            ledger_key=event.event_id,
            event_type=event.event_type,
            event_created=event.created,
        )

    async def _confirm_checkout(self, session_id: str, user_id: str) -> ReconcileResult:
        session = await asyncio.to_thread(self._gateway.retrieve_checkout_session, session_id)

        if session.correlated_user_id != user_id:
            logger.warning(f"User {user_id} tried to confirm checkout session {session_id} owned by {session.correlated_user_id}")
            raise SessionOwnershipError(f"Checkout session {session_id} does not belong to this user")

        plan = session.correlated_plan
        if plan is None:
            logger.error(f"Checkout session {session_id} has no valid plan in metadata: {session.metadata}")
            return ReconcileResult(ReconcileOutcome.MISSING_METADATA, user_id=user_id, message="Session has no plan")

        if not session.payment_confirmed:
            return ReconcileResult(ReconcileOutcome.IGNORED, user_id=user_id, message="Payment not confirmed")

        # Confirmations carry no gateway event time: they stay out of the
        # ordering watermark and yield to any webhook already applied.
        return await self._activate_from_session(
            session,
            user_id,
            plan,
            ledger_key=f"checkout:{session.id}",
            event_type="checkout.confirmation",
            event_created=None,
            confirmation=True,
        )

    async def _activate_from_session(
        self,
        session: GatewayCheckoutSession,
        user_id: str,
        plan: Plan,
        ledger_key: str,
        event_type: str,
        event_created: Optional[datetime],
        confirmation: bool = False,
    ) -> ReconcileResult:
        fields = _present(gateway_customer_id=session.customer)
        subscription_id = session.subscription
        status = EntitlementStatus.ACTIVE

        if subscription_id:
            subscription = await asyncio.to_thread(self._gateway.retrieve_subscription, subscription_id)
            if subscription.status in _ENDED_SUBSCRIPTION_STATUSES:
                logger.info(f"Skipping checkout {session.id}: subscription {subscription_id} already {subscription.status.value}")
                return ReconcileResult(ReconcileOutcome.IGNORED, user_id=user_id, message="Subscription already ended")

            fields.update(_present(
                gateway_subscription_id=subscription.id,
                period_end=subscription.period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
            ))
            if "gateway_customer_id" not in fields and subscription.customer:
                fields["gateway_customer_id"] = subscription.customer
            if confirmation:
                # The session may be long paid; trust the subscription as it is now
                status = subscription.entitlement_status

        patch = EntitlementPatch(plan=plan, status=status, **fields)
        update = EntitlementUpdate(
            patch=patch,
            event_id=ledger_key,
            event_type=event_type,
            event_created=event_created,
            subscription_id=subscription_id,
            defer_to_events=confirmation,
        )
        return await self._apply(user_id, update, f"checkout {session.id}, plan {plan.value}")

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def _subscription_created(self, event: BillingEvent) -> ReconcileResult:
        subscription = event.payload
        user_id = subscription.correlated_user_id
        if not user_id:
            return self._missing_metadata(event, f"subscription {subscription.id} metadata={subscription.metadata}")

        patch = EntitlementPatch(
            gateway_subscription_id=subscription.id,
            status=subscription.entitlement_status,
            cancel_at_period_end=subscription.cancel_at_period_end,
            **_present(
                gateway_customer_id=subscription.customer,
                period_end=subscription.period_end,
                plan=subscription.correlated_plan,
            ),
        )
        return await self._apply(user_id, self._event_update(event, patch, subscription.id), f"subscription {subscription.id} created")

    async def _subscription_updated(self, event: BillingEvent) -> ReconcileResult:
        subscription = event.payload
        user_id = subscription.correlated_user_id
        if not user_id:
            return self._missing_metadata(event, f"subscription {subscription.id} metadata={subscription.metadata}")

        status = subscription.entitlement_status
        period_end = subscription.period_end
        if status == EntitlementStatus.CANCELED and period_end and period_end > self._clock():
            # Cancelled but already paid through period_end
            status = EntitlementStatus.ACTIVE

        patch = EntitlementPatch(
            status=status,
            cancel_at_period_end=subscription.cancel_at_period_end,
            **_present(period_end=period_end),
        )
        update = self._event_update(event, patch, subscription.id, supersedable=True)
        return await self._apply(user_id, update, f"subscription {subscription.id} updated to {status.value}")

    async def _subscription_deleted(self, event: BillingEvent) -> ReconcileResult:
        subscription = event.payload
        user_id = subscription.correlated_user_id
        if not user_id:
            return self._missing_metadata(event, f"subscription {subscription.id} metadata={subscription.metadata}")

        patch = EntitlementPatch(
            status=EntitlementStatus.CANCELED,
            period_end=self._clock(),
            cancel_at_period_end=False,
        )
        update = self._event_update(event, patch, subscription.id, supersedable=True)
        return await self._apply(user_id, update, f"subscription {subscription.id} deleted")

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def _invoice_paid(self, event: BillingEvent) -> ReconcileResult:
        invoice = event.payload
        subscription_id = invoice.subscription_id
        if not subscription_id:
            logger.info(f"Invoice {invoice.id} is not tied to a subscription, ignoring")
            return ReconcileResult(ReconcileOutcome.IGNORED, message="Invoice has no subscription")

        subscription = await asyncio.to_thread(self._gateway.retrieve_subscription, subscription_id)
        user_id = subscription.correlated_user_id
        if not user_id:
            return self._missing_metadata(event, f"subscription {subscription_id} of invoice {invoice.id}")

        patch = EntitlementPatch(
            status=EntitlementStatus.ACTIVE,
            last_payment_date=invoice.paid_at or self._clock(),
            **_present(period_end=subscription.period_end),
        )
        update = self._event_update(event, patch, subscription_id, supersedable=True)
        return await self._apply(user_id, update, f"payment for invoice {invoice.id}")

    async def _invoice_payment_failed(self, event: BillingEvent) -> ReconcileResult:
        invoice = event.payload
        subscription_id = invoice.subscription_id
        if not subscription_id:
            logger.info(f"Invoice {invoice.id} is not tied to a subscription, ignoring")
            return ReconcileResult(ReconcileOutcome.IGNORED, message="Invoice has no subscription")

        subscription = await asyncio.to_thread(self._gateway.retrieve_subscription, subscription_id)
        user_id = subscription.correlated_user_id
        if not user_id:
            return self._missing_metadata(event, f"subscription {subscription_id} of invoice {invoice.id}")

        # Stripe keeps retrying; the subscription status says where it stands
        patch = EntitlementPatch(
            status=subscription.entitlement_status,
            last_payment_failure_date=self._clock(),
        )
        update = self._event_update(event, patch, subscription_id, supersedable=True)
        return await self._apply(user_id, update, f"failed payment for invoice {invoice.id}")

    # ------------------------------------------------------------------

    def _event_update(
        self,
        event: BillingEvent,
        patch: EntitlementPatch,
        subscription_id: str,
        supersedable: bool = False,
    ) -> EntitlementUpdate:
        return EntitlementUpdate(
            patch=patch,
            event_id=event.event_id,
            event_type=event.event_type,
            event_created=event.created,
            subscription_id=subscription_id,
            supersedable=supersedable,
        )

    def _missing_metadata(self, event: BillingEvent, detail: str) -> ReconcileResult:
        # Redelivery cannot fix absent metadata, so acknowledge without writing
        logger.error(f"Missing userId/plan correlation for {event.event_type} ({event.event_id}): {detail}")
        return ReconcileResult(ReconcileOutcome.MISSING_METADATA, message="Missing correlation metadata")

    async def _apply(self, user_id: str, update: EntitlementUpdate, description: str) -> ReconcileResult:
        apply_outcome = await asyncio.to_thread(self._store.apply_update, user_id, update)
        outcome = _APPLY_OUTCOMES[apply_outcome]
        status = update.patch.status

        if outcome == ReconcileOutcome.APPLIED:
            logger.info(f"Entitlement for user {user_id} updated ({description}), status: {status}")
        else:
            logger.info(f"Entitlement for user {user_id} not written ({description}): {outcome.value}")

        return ReconcileResult(
            outcome,
            user_id=user_id,
            message=description,
            status=EntitlementStatus(status) if status else None,
        )
