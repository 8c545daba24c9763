"""Models for Stripe subscription billing and user entitlements."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import get_logger

logger = get_logger(__name__)


class Plan(str, Enum):
    """Subscription plans sold through checkout."""
    WEEKLY = "weekly"
    ANNUAL = "annual"


class EntitlementStatus(str, Enum):
    """User entitlement status stored on the user record."""
    NONE = "none"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAYMENT_FAILED = "payment_failed"
    CANCELED = "canceled"


# Statuses that unlock premium features. Nothing else grants access.
PREMIUM_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.TRIALING})


class GatewaySubscriptionStatus(str, Enum):
    """Subscription statuses reported by Stripe."""
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


GATEWAY_STATUS_MAPPING = {
    GatewaySubscriptionStatus.ACTIVE: EntitlementStatus.ACTIVE,
    GatewaySubscriptionStatus.TRIALING: EntitlementStatus.TRIALING,
    GatewaySubscriptionStatus.PAST_DUE: EntitlementStatus.PAST_DUE,
    GatewaySubscriptionStatus.CANCELED: EntitlementStatus.CANCELED,
    GatewaySubscriptionStatus.INCOMPLETE: EntitlementStatus.INCOMPLETE,
    GatewaySubscriptionStatus.INCOMPLETE_EXPIRED: EntitlementStatus.CANCELED,
    GatewaySubscriptionStatus.UNPAID: EntitlementStatus.PAYMENT_FAILED,
    GatewaySubscriptionStatus.PAUSED: EntitlementStatus.PAYMENT_FAILED,
}


class BillingEventType(str, Enum):
    """Stripe webhook event types handled by reconciliation."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class PlanOffer(BaseModel):
    """Price definition used when no Stripe price id is configured."""
    name: str
    description: str
    unit_amount: int  # cents
    interval: str
    currency: str = "usd"


PLAN_CATALOG = {
    Plan.WEEKLY: PlanOffer(
        name="Ask The Stars - Weekly Cosmic Access",
        description="Unlock all premium astrology features for 1 week",
        unit_amount=499,
        interval="week",
    ),
    Plan.ANNUAL: PlanOffer(
        name="Ask The Stars - Annual Stellar Membership",
        description="Unlock all premium astrology features for 1 year",
        unit_amount=4999,
        interval="year",
    ),
}


def parse_plan(value: Optional[str]) -> Optional[Plan]:
    """Return the Plan for a raw identifier, or None if it is not supported."""
    if not value:
        return None
    try:
        return Plan(value.strip().lower())
    except ValueError:
        return None


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _expandable_id(value: Any) -> Any:
    """Stripe returns either an id or the expanded object for references."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# ---------------------------------------------------------------------------
# Gateway objects decoded from webhook payloads and API responses
# ---------------------------------------------------------------------------

class GatewayObject(BaseModel):
    """Common shape of the Stripe objects the engine reads."""
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value):
        return value or {}

    @property
    def correlated_user_id(self) -> Optional[str]:
        user_id = (self.metadata.get("userId") or "").strip()
        return user_id or None

    @property
    def correlated_plan(self) -> Optional[Plan]:
        return parse_plan(self.metadata.get("plan"))


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[SubscriptionItem] = Field(default_factory=list)


class GatewaySubscription(GatewayObject):
    """Stripe subscription object."""
    customer: Optional[str] = None
    status: GatewaySubscriptionStatus
    created: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    items: Optional[SubscriptionItemList] = None

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value):
        return _expandable_id(value)

    @property
    def period_end(self) -> Optional[datetime]:
        """End of the current period.

        Recent Stripe API versions only report the period on subscription
        items, so fall back to the first item.
        """
        timestamp = self.current_period_end
        if timestamp is None and self.items and self.items.data:
            timestamp = self.items.data[0].current_period_end
        return from_unix(timestamp)

    @property
    def entitlement_status(self) -> EntitlementStatus:
        return GATEWAY_STATUS_MAPPING[self.status]


class GatewayCheckoutSession(GatewayObject):
    """Stripe checkout session object."""
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_status: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None
    created: Optional[int] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _reference_id(cls, value):
        return _expandable_id(value)

    @property
    def correlated_user_id(self) -> Optional[str]:
        return super().correlated_user_id or (self.client_reference_id or "").strip() or None

    @property
    def payment_confirmed(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")


class InvoiceSubscriptionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription: Optional[str] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def _subscription_id(cls, value):
        return _expandable_id(value)


class InvoiceParent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_details: Optional[InvoiceSubscriptionDetails] = None


class InvoiceStatusTransitions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    paid_at: Optional[int] = None


class GatewayInvoice(GatewayObject):
    """Stripe invoice object."""
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[InvoiceParent] = None
    status_transitions: Optional[InvoiceStatusTransitions] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _reference_id(cls, value):
        return _expandable_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        """Subscription billed by this invoice, on old and new API versions."""
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def paid_at(self) -> Optional[datetime]:
        if self.status_transitions:
            return from_unix(self.status_transitions.paid_at)
        return None


GatewayPayload = Union[GatewayCheckoutSession, GatewaySubscription, GatewayInvoice]

EVENT_PAYLOAD_MODELS = {
    BillingEventType.CHECKOUT_COMPLETED: GatewayCheckoutSession,
    BillingEventType.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED: GatewayCheckoutSession,
    BillingEventType.SUBSCRIPTION_CREATED: GatewaySubscription,
    BillingEventType.SUBSCRIPTION_UPDATED: GatewaySubscription,
    BillingEventType.SUBSCRIPTION_DELETED: GatewaySubscription,
    BillingEventType.INVOICE_PAYMENT_SUCCEEDED: GatewayInvoice,
    BillingEventType.INVOICE_PAID: GatewayInvoice,
    BillingEventType.INVOICE_PAYMENT_FAILED: GatewayInvoice,
}


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object_: Dict[str, Any] = Field(alias="object")


class WebhookEvent(BaseModel):
    """Stripe event envelope as delivered to the webhook."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: datetime
    livemode: bool = False
    data: WebhookEventData


@dataclass(frozen=True)
class BillingEvent:
    """A verified webhook event with its payload decoded to a typed object."""
    event_id: str
    event_type: str
    created: datetime
    payload: Optional[GatewayPayload] = None
    livemode: bool = False

    @property
    def kind(self) -> Optional[BillingEventType]:
        try:
            return BillingEventType(self.event_type)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Entitlement record
# ---------------------------------------------------------------------------

LEGACY_STATUS_ALIASES = {
    "cancelled": EntitlementStatus.CANCELED,
    "unpaid": EntitlementStatus.PAYMENT_FAILED,
    "incomplete_expired": EntitlementStatus.CANCELED,
}


class EntitlementRecord(BaseModel):
    """Subscription fields of the user document in Firestore."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId")
    gateway_customer_id: Optional[str] = Field(None, alias="gatewayCustomerId")
    gateway_subscription_id: Optional[str] = Field(None, alias="gatewaySubscriptionId")
    plan: Optional[Plan] = None
    status: EntitlementStatus = EntitlementStatus.NONE
    period_end: Optional[datetime] = Field(None, alias="periodEnd")
    cancel_at_period_end: bool = Field(False, alias="cancelAtPeriodEnd")
    last_payment_date: Optional[datetime] = Field(None, alias="lastPaymentDate")
    last_payment_failure_date: Optional[datetime] = Field(None, alias="lastPaymentFailureDate")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")
    subscription_event_at: Dict[str, datetime] = Field(default_factory=dict, alias="subscriptionEventAt")

    @field_validator("plan", mode="before")
    @classmethod
    def _known_plan(cls, value):
        if value is None or isinstance(value, Plan):
            return value
        plan = parse_plan(str(value))
        if plan is None:
            logger.warning(f"Ignoring unknown stored plan: {value!r}")
        return plan

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value):
        if value is None:
            return EntitlementStatus.NONE
        if isinstance(value, EntitlementStatus):
            return value
        if value in LEGACY_STATUS_ALIASES:
            return LEGACY_STATUS_ALIASES[value]
        try:
            return EntitlementStatus(value)
        except ValueError:
            logger.warning(f"Unknown stored entitlement status {value!r}, treating as none")
            return EntitlementStatus.NONE

    @field_validator("subscription_event_at", mode="before")
    @classmethod
    def _event_map_or_empty(cls, value):
        return value or {}

    @property
    def has_premium_access(self) -> bool:
        return self.status in PREMIUM_STATUSES

    @classmethod
    def from_firestore_dict(cls, user_id: str, data: Dict[str, Any]) -> "EntitlementRecord":
        """Build a record from a Firestore user document."""
        return cls.model_validate({**data, "userId": user_id})

    def to_firestore_dict(self) -> Dict[str, Any]:
        """Convert to Firestore-compatible dictionary."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="python")


class EntitlementPatch(BaseModel):
    """Partial set of entitlement fields written by one reconciliation step.

    Only fields passed explicitly end up in the write, so a merge never nulls
    fields the event did not carry.
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    gateway_customer_id: Optional[str] = Field(None, alias="gatewayCustomerId")
    gateway_subscription_id: Optional[str] = Field(None, alias="gatewaySubscriptionId")
    plan: Optional[Plan] = None
    status: Optional[EntitlementStatus] = None
    period_end: Optional[datetime] = Field(None, alias="periodEnd")
    cancel_at_period_end: Optional[bool] = Field(None, alias="cancelAtPeriodEnd")
    last_payment_date: Optional[datetime] = Field(None, alias="lastPaymentDate")
    last_payment_failure_date: Optional[datetime] = Field(None, alias="lastPaymentFailureDate")

    def to_firestore_fields(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True, mode="python")


class EntitlementView(BaseModel):
    """Entitlement as returned to the client."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    plan: Optional[Plan] = None
    status: EntitlementStatus = EntitlementStatus.NONE
    period_end: Optional[datetime] = Field(None, alias="periodEnd")
    cancel_at_period_end: bool = Field(False, alias="cancelAtPeriodEnd")
    is_premium: bool = Field(False, alias="isPremium")

    @classmethod
    def from_record(cls, record: EntitlementRecord) -> "EntitlementView":
        return cls(
            user_id=record.user_id,
            plan=record.plan,
            status=record.status,
            period_end=record.period_end,
            cancel_at_period_end=record.cancel_at_period_end,
            is_premium=record.has_premium_access,
        )
