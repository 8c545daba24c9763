"""Stripe webhook signature verification and event decoding."""

from typing import Optional

import stripe
from pydantic import ValidationError

from billing_errors import InvalidSignature, MalformedPayload, MissingSecret
from billing_models import EVENT_PAYLOAD_MODELS, BillingEvent, BillingEventType, WebhookEvent
from config import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def verify(raw_body: bytes, signature_header: Optional[str], shared_secret: Optional[str]) -> BillingEvent:
    """Check the Stripe signature over the raw body and decode the event.

    Args:
        raw_body: Request body exactly as received. Any re-encoding breaks
            the signature.
        signature_header: Value of the ``Stripe-Signature`` header.
        shared_secret: Endpoint signing secret (``whsec_...``).

    Returns:
        The decoded event.

    Raises:
        MissingSecret: The signing secret is not configured.
        InvalidSignature: Header missing or signature mismatch.
        MalformedPayload: Body is not an event of the expected shape.
    """
    if not shared_secret:
        raise MissingSecret("STRIPE_WEBHOOK_SECRET not configured")

    if not signature_header:
        raise InvalidSignature("Missing stripe-signature header")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayload(f"Body is not UTF-8: {exc}") from exc

    try:
        # Constant-time HMAC-SHA256 comparison plus timestamp tolerance
        stripe.WebhookSignature.verify_header(
            payload,
            signature_header,
            shared_secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc)) from exc

    return decode_event(raw_body)


def decode_event(raw_body: bytes) -> BillingEvent:
    """Decode a verified event body into a typed BillingEvent."""
    try:
        envelope = WebhookEvent.model_validate_json(raw_body)
    except ValidationError as exc:
        raise MalformedPayload(f"Invalid event envelope: {exc}") from exc

    payload = None
    try:
        event_type = BillingEventType(envelope.type)
    except ValueError:
        event_type = None

    if event_type is not None:
        model = EVENT_PAYLOAD_MODELS[event_type]
        try:
            payload = model.model_validate(envelope.data.object_)
        except ValidationError as exc:
            raise MalformedPayload(f"Unexpected {envelope.type} payload: {exc}") from exc

    return BillingEvent(
        event_id=envelope.id,
        event_type=envelope.type,
        created=envelope.created,
        payload=payload,
        livemode=envelope.livemode,
    )
