"""API routes for billing, checkout and entitlements."""

import asyncio
import json
import traceback
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from auth import require_non_anonymous_user, verify_firebase_token
from billing_errors import (
    CheckoutError,
    EntitlementNotFound,
    GatewayError,
    GatewayUnavailable,
    InvalidCheckoutRequest,
    InvalidPlan,
    InvalidSignature,
    MalformedPayload,
    MissingSecret,
    NoSubscription,
    SessionOwnershipError,
    StoreError,
)
from billing_models import EntitlementRecord, EntitlementView
from config import APP_BASE_URL, get_logger
from dependencies import BillingServices, get_billing_services
from reconciliation import ReconcileOutcome
from webhook_verifier import SIGNATURE_HEADER, verify

logger = get_logger(__name__)

# Create router
router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.get("/health")
async def health_check(services: BillingServices = Depends(get_billing_services)):
    """Report store and gateway availability."""
    store_ok = await asyncio.to_thread(services.store.ping)
    health_status = {
        "status": "healthy" if store_ok else "degraded",
        "store": "available" if store_ok else "unavailable",
        "gateway": "configured" if services.gateway.configured else "not_configured",
    }
    if not store_ok:
        raise HTTPException(status_code=503, detail=health_status)
    return health_status


@router.post("/webhooks/billing")
async def handle_billing_webhook(
    request: Request,
    services: BillingServices = Depends(get_billing_services),
):
    """Receive Stripe webhook events and reconcile entitlements."""
    # Signature covers the exact bytes, so read before any JSON parsing
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        event = verify(raw_body, signature, services.webhook_secret)
    except MissingSecret as e:
        logger.error(f"Webhook not configured: {e}")
        return _error(500, "Webhook not configured")
    except InvalidSignature as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return _error(400, "Invalid signature")
    except MalformedPayload as e:
        logger.warning(f"Webhook payload rejected: {e}")
        return _error(400, "Invalid payload")

    try:
        result = await asyncio.wait_for(
            services.engine.process(event),
            timeout=services.webhook_deadline_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(f"Webhook processing for {event.event_id} exceeded {services.webhook_deadline_seconds}s")
        return _error(503, "Processing timed out, please retry")

    if result.outcome == ReconcileOutcome.RETRY:
        return _error(503, "Temporary error, please retry")
    if result.outcome == ReconcileOutcome.FAILED:
        return _error(500, "Webhook processing failed")

    return {"received": True, "outcome": result.outcome.value}


@router.post("/api/checkout")
async def create_checkout_session(
    request: dict,
    services: BillingServices = Depends(get_billing_services),
):
    """Start a Stripe checkout for a subscription plan."""
    if not services.gateway.configured:
        logger.error("STRIPE_SECRET_KEY environment variable is not set")
        return _error(500, "Payment system configuration error")

    plan = request.get("plan")
    user_id = request.get("userId")
    try:
        session = await services.checkout.create_checkout(user_id, plan, request.get("email"))
    except (InvalidCheckoutRequest, InvalidPlan) as e:
        return _error(400, str(e))
    except GatewayUnavailable as e:
        logger.error(f"Stripe checkout unavailable for user {user_id}, plan {plan}: {e}")
        return _error(503, "Payment service temporarily unavailable, please try again")
    except CheckoutError as e:
        logger.error(f"Stripe checkout error for user {user_id}, plan {plan}: {e}")
        return _error(400, "This plan is currently unavailable")

    return {"url": session.redirect_url, "sessionId": session.session_id}


@router.post("/api/checkout/confirm")
async def confirm_checkout(
    request: dict,
    user: dict = Depends(verify_firebase_token),
    services: BillingServices = Depends(get_billing_services),
):
    """Reconcile a completed checkout without waiting for the webhook."""
    session_id = request.get("sessionId")
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID required")

    try:
        result = await services.engine.confirm_checkout(session_id, user['uid'])
    except SessionOwnershipError as e:
        raise HTTPException(status_code=403, detail=str(e))

    if result.outcome == ReconcileOutcome.RETRY:
        raise HTTPException(status_code=503, detail="Payment service temporarily unavailable")
    if result.outcome == ReconcileOutcome.FAILED:
        raise HTTPException(status_code=500, detail="Failed to confirm checkout")
    if result.outcome == ReconcileOutcome.REJECTED:
        raise HTTPException(status_code=404, detail="Checkout session not found")

    return {
        "outcome": result.outcome.value,
        "status": result.status.value if result.status else None,
    }


@router.get("/api/checkout/status")
async def stream_checkout_status(
    user: dict = Depends(verify_firebase_token),
    services: BillingServices = Depends(get_billing_services),
):
    """Stream entitlement status after redirect-back from checkout."""
    async def generate_status_events():
        try:
            async for update in services.poller.watch(user['uid']):
                yield f"data: {json.dumps(update.to_dict())}\n\n"
        except Exception as e:
            logger.error(f"Error streaming checkout status: {e}")
            yield f"data: {json.dumps({'state': 'error', 'message': 'Unable to check subscription status'})}\n\n"

    return StreamingResponse(
        generate_status_events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


@router.get("/api/subscription")
async def get_subscription_status_endpoint(
    user: dict = Depends(verify_firebase_token),
    services: BillingServices = Depends(get_billing_services),
):
    """Get the current user's entitlement."""
    try:
        record = await asyncio.to_thread(services.store.get, user['uid'])
    except EntitlementNotFound:
        record = EntitlementRecord(user_id=user['uid'])
    except StoreError as e:
        logger.error(f"Error reading entitlement for {user['uid']}: {e}")
        raise HTTPException(status_code=503, detail="Subscription service temporarily unavailable")

    return EntitlementView.from_record(record).model_dump(by_alias=True, mode="json")


@router.post("/api/subscription/cancel")
async def cancel_subscription(
    user: dict = Depends(require_non_anonymous_user),
    services: BillingServices = Depends(get_billing_services),
):
    """Cancel the current user's subscription."""
    try:
        result = await services.subscriptions.cancel_subscription(user['uid'])
    except NoSubscription as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GatewayUnavailable:
        raise HTTPException(status_code=503, detail="Payment service temporarily unavailable")
    except GatewayError as e:
        logger.error(f"Cancel subscription error for {user['uid']}: {e}")
        raise HTTPException(status_code=400, detail="Failed to cancel subscription")
    except StoreError:
        logger.error(traceback.format_exc())
        raise HTTPException(status_code=503, detail="Subscription service temporarily unavailable")

    return result.to_dict()


@router.post("/api/billing-portal")
async def create_billing_portal(
    request: Optional[dict] = None,
    user: dict = Depends(require_non_anonymous_user),
    services: BillingServices = Depends(get_billing_services),
):
    """Open the Stripe billing portal for the current user."""
    return_url = (request or {}).get("returnUrl") or f"{APP_BASE_URL}/account"
    try:
        url = await services.subscriptions.create_billing_portal(user['uid'], return_url)
    except NoSubscription as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GatewayUnavailable:
        raise HTTPException(status_code=503, detail="Payment service temporarily unavailable")
    except GatewayError as e:
        logger.error(f"Billing portal error for {user['uid']}: {e}")
        raise HTTPException(status_code=400, detail="Failed to open billing portal")
    except StoreError:
        raise HTTPException(status_code=503, detail="Subscription service temporarily unavailable")

    return {"url": url}
