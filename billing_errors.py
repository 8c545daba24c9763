"""Error taxonomy for billing and entitlement handling."""

from typing import Optional


class BillingError(Exception):
    """Base class for all billing errors."""


# Webhook verification

class VerificationError(BillingError):
    """Inbound webhook could not be trusted or decoded."""


class MissingSecret(VerificationError):
    """Webhook shared secret is not configured."""


class InvalidSignature(VerificationError):
    """Signature header missing, malformed or not matching the body."""


class MalformedPayload(VerificationError):
    """Body is not valid JSON or does not match the expected event shape."""


# Payment gateway

class GatewayError(BillingError):
    """Base class for payment gateway failures."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class GatewayUnavailable(GatewayError):
    """Transient gateway failure (network, rate limit, 5xx). Safe to retry."""


class GatewayRequestError(GatewayError):
    """Gateway rejected the request. Retrying will not help."""


# Entitlement store

class StoreError(BillingError):
    """Base class for entitlement store failures."""


class StoreUnavailable(StoreError):
    """Store temporarily unreachable. Safe to retry."""


class EntitlementNotFound(StoreError):
    """No entitlement record exists for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"No entitlement record for user {user_id}")
        self.user_id = user_id


# Checkout

class CheckoutError(BillingError):
    """Base class for checkout creation failures."""


class InvalidCheckoutRequest(CheckoutError):
    """Required checkout fields are missing."""


class InvalidPlan(CheckoutError):
    """Plan is not one of the supported plan identifiers."""


class PlanUnavailable(CheckoutError):
    """Gateway rejected the price configuration for the plan."""


# Subscription management

class SubscriptionManagementError(BillingError):
    """Base class for self-service subscription failures."""


class NoSubscription(SubscriptionManagementError):
    """User has no gateway subscription or customer to act on."""


class SessionOwnershipError(SubscriptionManagementError):
    """Checkout session belongs to a different user."""
