"""Persistence for per-user entitlement records.

Two backends share one interface: Firestore (production) and an in-memory
store for local development and tests. Every write is a partial merge, and
event-driven writes go through ``apply_update`` which checks the processed
event ledger and the per-subscription ordering watermark atomically with
the write.
"""

import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from billing_errors import EntitlementNotFound, StoreError, StoreUnavailable
from billing_models import EntitlementPatch, EntitlementRecord
from config import get_logger

logger = get_logger(__name__)

USERS_COLLECTION = "users"
BILLING_EVENTS_COLLECTION = "billing_events"
LEDGER_RETENTION = timedelta(days=90)

# Statuses under which a different subscription may take over the record
_REPLACEABLE_STATUSES = {None, "none", "canceled", "cancelled"}

_TRANSIENT_ERRORS = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.Aborted,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.TooManyRequests,
    gcp_exceptions.ResourceExhausted,
)


class ApplyOutcome(str, Enum):
    """Result of an event-driven write."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class EntitlementUpdate:
    """An entitlement change produced by one gateway event.

    ``event_id`` keys the processed-event ledger. ``event_created`` and
    ``subscription_id`` drive the ordering watermark; leaving
    ``event_created`` unset opts the write out of ordering checks.
    ``supersedable`` marks writes that must not touch a record already
    owned by a different live subscription. Other writes may take such a
    record over only when they are newer than everything applied to it.
    ``defer_to_events`` marks writes that yield once any gateway event has
    been applied for the subscription.
    """
    patch: EntitlementPatch
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    event_created: Optional[datetime] = None
    subscription_id: Optional[str] = None
    supersedable: bool = False
    defer_to_events: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_update(
    current: Optional[Dict[str, Any]],
    update: EntitlementUpdate,
    already_processed: bool,
) -> ApplyOutcome:
    """Decide whether an update may be written over the current document."""
    if already_processed:
        return ApplyOutcome.DUPLICATE

    current = current or {}
    watermarks = current.get("subscriptionEventAt") or {}

    current_subscription = current.get("gatewaySubscriptionId")
    takes_over_live_subscription = bool(
        update.subscription_id
        and current_subscription
        and current_subscription != update.subscription_id
        and current.get("status") not in _REPLACEABLE_STATUSES
    )
    if takes_over_live_subscription:
        if update.supersedable or update.event_created is None:
            return ApplyOutcome.SUPERSEDED
        newest = max(watermarks.values(), default=None)
        if newest is not None and update.event_created < newest:
            return ApplyOutcome.SUPERSEDED

    if update.defer_to_events and update.subscription_id in watermarks:
        return ApplyOutcome.STALE

    if update.event_created is not None and update.subscription_id:
        last_applied = watermarks.get(update.subscription_id)
        if last_applied is not None and update.event_created < last_applied:
            return ApplyOutcome.STALE

    return ApplyOutcome.APPLIED


def build_write(current: Optional[Dict[str, Any]], update: EntitlementUpdate, now: datetime) -> Dict[str, Any]:
    """Fields to merge into the user document for an applied update.

    Switching ``gatewaySubscriptionId`` drops the watermarks of every other
    subscription with ``firestore.DELETE_FIELD``.
    """
    current = current or {}
    fields = update.patch.to_firestore_fields()

    previous = current.get("updatedAt")
    fields["updatedAt"] = max(now, previous) if previous else now

    event_at: Dict[str, Any] = {}
    new_subscription = fields.get("gatewaySubscriptionId")
    if new_subscription:
        for subscription_id in current.get("subscriptionEventAt") or {}:
            if subscription_id != new_subscription:
                event_at[subscription_id] = firestore.DELETE_FIELD

    if update.event_created is not None and update.subscription_id:
        event_at[update.subscription_id] = update.event_created
    if event_at:
        fields["subscriptionEventAt"] = event_at
    return fields


def build_ledger_entry(user_id: str, update: EntitlementUpdate, outcome: ApplyOutcome, now: datetime) -> Dict[str, Any]:
    return {
        "type": update.event_type,
        "userId": user_id,
        "subscriptionId": update.subscription_id,
        "outcome": outcome.value,
        "eventCreatedAt": update.event_created,
        "processedAt": now,
        "expiresAt": now + LEDGER_RETENTION,
    }


def _deep_merge(target: Dict[str, Any], fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if value is firestore.DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class EntitlementStore(Protocol):
    """Interface shared by entitlement store backends."""

    def get(self, user_id: str) -> EntitlementRecord:
        """Return the user's record or raise EntitlementNotFound."""
        ...

    def upsert_merge(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into the user's record, creating it if needed."""
        ...

    def apply_update(self, user_id: str, update: EntitlementUpdate) -> ApplyOutcome:
        """Atomically check the ledger and watermark, then merge the update."""
        ...

    def ping(self) -> bool:
        """Return True when the backend is reachable."""
        ...


class InMemoryEntitlementStore:
    """Process-local store with per-user locking."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._ledger: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.write_count = 0

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    def get(self, user_id: str) -> EntitlementRecord:
        with self._lock_for(user_id):
            document = self._documents.get(user_id)
            if document is None:
                raise EntitlementNotFound(user_id)
            return EntitlementRecord.from_firestore_dict(user_id, copy.deepcopy(document))

    def upsert_merge(self, user_id: str, fields: Dict[str, Any]) -> None:
        with self._lock_for(user_id):
            self._merge(user_id, fields)

    def _merge(self, user_id: str, fields: Dict[str, Any]) -> None:
        document = self._documents.setdefault(user_id, {})
        _deep_merge(document, fields)
        self.write_count += 1

    def apply_update(self, user_id: str, update: EntitlementUpdate) -> ApplyOutcome:
        with self._lock_for(user_id):
            current = self._documents.get(user_id)
            already_processed = bool(update.event_id) and update.event_id in self._ledger
            outcome = evaluate_update(current, update, already_processed)
            if outcome == ApplyOutcome.DUPLICATE:
                return outcome

            now = self._clock()
            if outcome == ApplyOutcome.APPLIED:
                self._merge(user_id, build_write(current, update, now))
            if update.event_id:
                self._ledger[update.event_id] = build_ledger_entry(user_id, update, outcome, now)
            return outcome

    def processed_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        return self._ledger.get(event_id)

    def ping(self) -> bool:
        return True


def _apply_in_transaction(transaction, user_ref, event_ref, user_id: str, update: EntitlementUpdate, now: datetime) -> ApplyOutcome:
    # Firestore requires all reads before any write in a transaction
    already_processed = False
    if event_ref is not None:
        already_processed = event_ref.get(transaction=transaction).exists

    snapshot = user_ref.get(transaction=transaction)
    current = snapshot.to_dict() if snapshot.exists else None

    outcome = evaluate_update(current, update, already_processed)
    if outcome == ApplyOutcome.DUPLICATE:
        return outcome

    if outcome == ApplyOutcome.APPLIED:
        transaction.set(user_ref, build_write(current, update, now), merge=True)
    if event_ref is not None:
        transaction.set(event_ref, build_ledger_entry(user_id, update, outcome, now))
    return outcome


class FirestoreEntitlementStore:
    """Entitlement records stored on ``users/{userId}`` documents."""

    def __init__(
        self,
        db,
        users_collection: str = USERS_COLLECTION,
        events_collection: str = BILLING_EVENTS_COLLECTION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._db = db
        self._users_collection = users_collection
        self._events_collection = events_collection
        self._clock = clock

    def _user_ref(self, user_id: str):
        return self._db.collection(self._users_collection).document(user_id)

    def _event_ref(self, event_id: Optional[str]):
        if not event_id:
            return None
        return self._db.collection(self._events_collection).document(event_id)

    def get(self, user_id: str) -> EntitlementRecord:
        try:
            snapshot = self._user_ref(user_id).get()
        except gcp_exceptions.GoogleAPICallError as exc:
            raise _store_error("read", user_id, exc) from exc

        if not snapshot.exists:
            raise EntitlementNotFound(user_id)
        return EntitlementRecord.from_firestore_dict(user_id, snapshot.to_dict() or {})

    def upsert_merge(self, user_id: str, fields: Dict[str, Any]) -> None:
        try:
            self._user_ref(user_id).set(fields, merge=True)
        except gcp_exceptions.GoogleAPICallError as exc:
            raise _store_error("merge", user_id, exc) from exc
        logger.debug(f"Merged fields {sorted(fields)} into user {user_id}")

    def apply_update(self, user_id: str, update: EntitlementUpdate) -> ApplyOutcome:
        transaction = self._db.transaction()
        apply = firestore.transactional(_apply_in_transaction)
        try:
            return apply(
                transaction,
                self._user_ref(user_id),
                self._event_ref(update.event_id),
                user_id,
                update,
                self._clock(),
            )
        except gcp_exceptions.GoogleAPICallError as exc:
            raise _store_error("transaction", user_id, exc) from exc

    def ping(self) -> bool:
        try:
            self._db.collection(self._users_collection).limit(1).get()
            return True
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.error(f"Firestore health check failed: {exc}")
            return False


def _store_error(action: str, user_id: str, exc: Exception) -> StoreError:
    logger.error(f"Firestore {action} failed for user {user_id}: {exc}")
    if isinstance(exc, _TRANSIENT_ERRORS):
        return StoreUnavailable(f"Firestore {action} failed: {exc}")
    return StoreError(f"Firestore {action} failed: {exc}")
