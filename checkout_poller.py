"""Post-checkout entitlement polling.

After Stripe redirects back to the app, the client waits on this stream
until the webhook has activated the subscription. The poller only reads;
the webhook path stays authoritative.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict

from billing_errors import EntitlementNotFound, StoreError
from billing_models import PREMIUM_STATUSES, EntitlementStatus
from entitlement_store import EntitlementStore
from config import get_logger

logger = get_logger(__name__)

PENDING_MESSAGE = "Processing your subscription... Please wait while we activate your premium features."
CONFIRMED_MESSAGE = "Your subscription is now active."
TIMED_OUT_MESSAGE = (
    "We're still confirming your payment. Please refresh the page in a moment, "
    "or contact support if your subscription does not appear."
)


class PollState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollUpdate:
    state: PollState
    status: EntitlementStatus
    message: str

    @property
    def final(self) -> bool:
        return self.state != PollState.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "status": self.status.value, "message": self.message}


class EntitlementPoller:
    """Watches a user's entitlement until it becomes active or time runs out."""

    def __init__(self, store: EntitlementStore, interval_seconds: float = 2.0, timeout_seconds: float = 60.0):
        self._store = store
        self._interval = interval_seconds
        self._timeout = timeout_seconds

    async def _read_status(self, user_id: str) -> EntitlementStatus:
        try:
            record = await asyncio.to_thread(self._store.get, user_id)
        except EntitlementNotFound:
            return EntitlementStatus.NONE
        except StoreError as exc:
            # Keep waiting; a later read may succeed
            logger.warning(f"Entitlement read failed while polling for user {user_id}: {exc}")
            return EntitlementStatus.NONE
        return record.status

    async def watch(self, user_id: str) -> AsyncIterator[PollUpdate]:
        """Yield a pending update per poll, then one final update."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout

        while True:
            status = await self._read_status(user_id)
            if status in PREMIUM_STATUSES:
                logger.info(f"Checkout confirmed for user {user_id} (status={status.value})")
                yield PollUpdate(PollState.CONFIRMED, status, CONFIRMED_MESSAGE)
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Timed out waiting for entitlement of user {user_id} (status={status.value})")
                yield PollUpdate(PollState.TIMED_OUT, status, TIMED_OUT_MESSAGE)
                return

            yield PollUpdate(PollState.PENDING, status, PENDING_MESSAGE)
            await asyncio.sleep(min(self._interval, remaining))

    async def wait_for_activation(self, user_id: str) -> PollUpdate:
        """Return the final update of ``watch``."""
        update = None
        async for update in self.watch(user_id):
            if update.final:
                break
        return update
