"""Error taxonomy for checkout reconciliation and the payment gateway."""

from __future__ import annotations

from enum import StrEnum


class FailureReason(StrEnum):
    """Structured failure reasons exposed to clients instead of provider text."""

    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PAYMENT_INCOMPLETE = "payment_incomplete"
    SUBSCRIPTION_NOT_ACTIVE = "subscription_not_active"
    SUBSCRIPTION_MISSING = "subscription_missing"
    PERSISTENCE_FAILED = "persistence_failed"
    SESSION_NOT_FOUND = "session_not_found"
    INVALID_PLAN = "invalid_plan"


class BillingError(RuntimeError):
    """Base exception raised by the billing subsystem."""

    reason: FailureReason | None = None
    retryable: bool = False

    def __init__(self, message: str, code: str = "BILLING_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ProviderUnavailable(BillingError):
    """Raised when the payment provider times out, rate limits, or returns 5xx."""

    reason = FailureReason.PROVIDER_UNAVAILABLE
    retryable = True

    def __init__(self, message: str = "Payment provider unavailable") -> None:
        super().__init__(message, code="503_PROVIDER_UNAVAILABLE")


class InvalidPlan(BillingError):
    """Raised when a price reference is unknown to the provider or the catalog."""

    reason = FailureReason.INVALID_PLAN

    def __init__(self, message: str = "Unknown plan") -> None:
        super().__init__(message, code="400_INVALID_PLAN")


class SessionNotFound(BillingError):
    """Raised when the provider has no checkout session for the reference."""

    reason = FailureReason.SESSION_NOT_FOUND

    def __init__(self, message: str = "Checkout session not found") -> None:
        super().__init__(message, code="404_SESSION_NOT_FOUND")


class InvalidSignature(BillingError):
    """Raised when a webhook signature cannot be verified."""

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message, code="400_INVALID_SIGNATURE")


class MalformedEvent(BillingError):
    """Raised when a signed webhook event lacks required fields."""

    def __init__(self, message: str = "Malformed event") -> None:
        super().__init__(message, code="400_MALFORMED_EVENT")


class PaymentIncomplete(BillingError):
    """Raised when the checkout session has not been paid yet."""

    reason = FailureReason.PAYMENT_INCOMPLETE
    retryable = True

    def __init__(self, payment_status: str | None = None) -> None:
        super().__init__(
            f"Payment not completed (status={payment_status or 'unknown'})",
            code="402_PAYMENT_INCOMPLETE",
        )
        self.payment_status = payment_status


class SubscriptionNotActive(BillingError):
    """Raised when the provider subscription is neither active nor trialing."""

    reason = FailureReason.SUBSCRIPTION_NOT_ACTIVE

    def __init__(self, status: str) -> None:
        super().__init__(f"Subscription is {status}, not active", code="402_SUBSCRIPTION_INACTIVE")
        self.status = status


class SubscriptionMissing(BillingError):
    """Raised when a paid checkout carries no subscription to entitle."""

    reason = FailureReason.SUBSCRIPTION_MISSING

    def __init__(self, message: str = "Subscription not found for checkout") -> None:
        super().__init__(message, code="409_SUBSCRIPTION_MISSING")


class PersistenceFailed(BillingError):
    """Raised when the entitlement write cannot be stored durably."""

    reason = FailureReason.PERSISTENCE_FAILED

    def __init__(self, message: str = "Failed to persist subscription") -> None:
        super().__init__(message, code="500_PERSISTENCE_FAILED")


class StaleEvent(BillingError):
    """Raised when an event is older than the stored subscription state."""

    def __init__(self, event_id: str, message: str = "Event older than stored state") -> None:
        super().__init__(message, code="200_STALE_EVENT")
        self.event_id = event_id


class InvalidPromoCode(BillingError):
    """Raised when checkout is requested with a promotion code that does not apply."""

    def __init__(self, message: str = "Invalid or expired promo code") -> None:
        super().__init__(message, code="400_INVALID_PROMO_CODE")
