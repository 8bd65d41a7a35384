"""Access gate: subscription status decides who reaches gated features."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock

from app.core.timeouts import with_timeout
from app.models.subscription import SubscriptionStatus
from app.observability.metrics import metrics
from app.services.billing.errors import BillingError, PersistenceFailed
from app.services.billing.store import EntitlementStore

logger = logging.getLogger(__name__)


class AccessReason(StrEnum):
    ACTIVE_SUBSCRIPTION = "active_subscription"
    AUTHENTICATED = "authenticated"
    PROVISIONAL_CHECKOUT = "provisional_checkout"
    UNAUTHENTICATED = "unauthenticated"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


DENY_MESSAGES = {
    AccessReason.UNAUTHENTICATED: "Please sign in to continue.",
    AccessReason.NO_ACTIVE_SUBSCRIPTION: "Choose a plan to unlock your dashboard.",
    AccessReason.PAST_DUE: (
        "Your last payment did not go through. Update your payment method to keep access."
    ),
    AccessReason.CANCELED: "Your subscription has ended. Resubscribe to regain access.",
}

_DENY_BY_STATUS = {
    SubscriptionStatus.PAST_DUE: AccessReason.PAST_DUE,
    SubscriptionStatus.UNPAID: AccessReason.PAST_DUE,
    SubscriptionStatus.CANCELED: AccessReason.CANCELED,
    SubscriptionStatus.INCOMPLETE_EXPIRED: AccessReason.CANCELED,
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason
    status: SubscriptionStatus | None = None

    @property
    def message(self) -> str | None:
        return DENY_MESSAGES.get(self.reason)

    @classmethod
    def allow(
        cls, reason: AccessReason, status: SubscriptionStatus | None = None
    ) -> AccessDecision:
        return cls(allowed=True, reason=reason, status=status)

    @classmethod
    def deny(cls, reason: AccessReason, status: SubscriptionStatus | None = None) -> AccessDecision:
        return cls(allowed=False, reason=reason, status=status)


class ReconciliationMarkers:
    """Accounts with a redirect reconciliation in flight, each with an expiry.

    Concurrent reconciliations for one account share a marker that is cleared
    when the last of them ends. A marker left behind by a crashed request stops
    granting access once its TTL elapses.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        # account_id -> (in-flight count, expiry)
        self._markers: dict[str, tuple[int, float]] = {}
        self._lock = Lock()

    def begin(self, account_id: str) -> None:
        with self._lock:
            now = self._clock()
            count, expires_at = self._markers.get(account_id, (0, now))
            if expires_at <= now:
                count = 0
            self._markers[account_id] = (count + 1, now + self._ttl)

    def end(self, account_id: str) -> None:
        with self._lock:
            marker = self._markers.get(account_id)
            if marker is None:
                return
            count, expires_at = marker
            if count <= 1:
                del self._markers[account_id]
            else:
                self._markers[account_id] = (count - 1, expires_at)

    def is_active(self, account_id: str) -> bool:
        with self._lock:
            marker = self._markers.get(account_id)
            if marker is None:
                return False
            if marker[1] <= self._clock():
                del self._markers[account_id]
                return False
            return True


class AccessGate:
    def __init__(
        self,
        store: EntitlementStore,
        markers: ReconciliationMarkers,
        *,
        store_timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._markers = markers
        self._store_timeout = store_timeout

    async def can_access(
        self, account_id: str | None, *, require_subscription: bool = True
    ) -> AccessDecision:
        """Decide access from stored subscription state only.

        A store failure denies; it never grants.
        """
        if not account_id:
            return AccessDecision.deny(AccessReason.UNAUTHENTICATED)
        if not require_subscription:
            return AccessDecision.allow(AccessReason.AUTHENTICATED)
        if self._markers.is_active(account_id):
            metrics.increment("access.provisional")
            return AccessDecision.allow(AccessReason.PROVISIONAL_CHECKOUT)

        try:
            snapshot = await with_timeout(
                self._store.get_subscription(account_id),
                seconds=self._store_timeout,
                operation="store.get_subscription",
                error=PersistenceFailed,
            )
        except BillingError:
            logger.exception("billing.access.store_failed", extra={"account_id": account_id})
            metrics.increment("access.store_failed")
            return AccessDecision.deny(AccessReason.NO_ACTIVE_SUBSCRIPTION)

        if snapshot is None:
            return AccessDecision.deny(AccessReason.NO_ACTIVE_SUBSCRIPTION)
        if snapshot.is_entitled:
            await self._retry_onboarding(account_id)
            return AccessDecision.allow(AccessReason.ACTIVE_SUBSCRIPTION, snapshot.status)
        reason = _DENY_BY_STATUS.get(snapshot.status, AccessReason.NO_ACTIVE_SUBSCRIPTION)
        logger.info(
            "billing.access.denied",
            extra={"account_id": account_id, "status": snapshot.status.value, "reason": reason},
        )
        return AccessDecision.deny(reason, snapshot.status)

    async def _retry_onboarding(self, account_id: str) -> None:
        try:
            profile = await with_timeout(
                self._store.get_account_profile(account_id),
                seconds=self._store_timeout,
                operation="store.get_account_profile",
                error=PersistenceFailed,
            )
            if profile is not None and profile.onboarding_completed:
                return
            await with_timeout(
                self._store.mark_onboarding_completed(account_id),
                seconds=self._store_timeout,
                operation="store.mark_onboarding_completed",
                error=PersistenceFailed,
            )
        except BillingError:
            logger.warning("billing.access.onboarding_retry_failed", extra={"account_id": account_id})
            return
        logger.info("billing.access.onboarding_completed", extra={"account_id": account_id})
