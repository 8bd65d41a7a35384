"""Payment gateway adapter around the Stripe SDK."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
from pydantic import TypeAdapter, ValidationError

from app.core.timeouts import with_timeout
from app.models.billing_events import BillingEvent
from app.models.subscription import PlanType, SubscriptionStatus
from app.observability.metrics import metrics
from app.services.billing.errors import (
    InvalidPlan,
    InvalidSignature,
    MalformedEvent,
    ProviderUnavailable,
    SessionNotFound,
    SubscriptionMissing,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

SETTLED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})
_EVENT_ADAPTER: TypeAdapter[BillingEvent] = TypeAdapter(BillingEvent)


@dataclass(frozen=True)
class CheckoutSessionHandle:
    checkout_url: str
    session_ref: str


@dataclass(frozen=True)
class CheckoutSessionDetail:
    session_ref: str
    payment_status: str
    customer_ref: str | None
    subscription_ref: str | None
    amount_total: int
    currency: str
    invoice_ref: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class Discount:
    amount_off: int | None = None
    percent_off: float | None = None


@dataclass(frozen=True)
class SubscriptionDetail:
    subscription_ref: str
    status: SubscriptionStatus
    period_start: datetime | None
    period_end: datetime | None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    price_ref: str | None = None
    discount: Discount | None = None


@dataclass(frozen=True)
class PromotionCodeCheck:
    """Outcome of a promotion code lookup; ``reason`` explains ``valid=False``."""

    valid: bool
    code: str
    promotion_ref: str | None = None
    discount_type: str | None = None
    discount_value: float = 0.0
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None
    expires_at: datetime | None = None
    max_redemptions: int | None = None
    times_redeemed: int | None = None
    description: str | None = None
    reason: str | None = None

    @property
    def is_full_discount(self) -> bool:
        return self.valid and self.discount_type == "percentage" and self.discount_value >= 100


class StripeGateway:
    """Async facade over the blocking Stripe SDK.

    The API key travels with each request instead of living on the ``stripe``
    module, so several gateways can coexist in one process.
    """

    def __init__(
        self,
        api_key: str,
        *,
        app_base_url: str,
        price_catalog: Mapping[str, str] | None = None,
        timeout: float = 10.0,
        webhook_tolerance: int = 300,
        sdk: Any = stripe,
    ) -> None:
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is required to create a StripeGateway.")
        self._api_key = api_key
        self._base_url = app_base_url.rstrip("/")
        self._catalog = dict(price_catalog or {})
        self._timeout = timeout
        self._tolerance = webhook_tolerance
        self._sdk = sdk

    async def create_checkout_session(
        self,
        *,
        account_id: str,
        price_ref: str,
        plan_type: PlanType,
        promo_code: str | None = None,
        promotion_ref: str | None = None,
        customer_email: str | None = None,
    ) -> CheckoutSessionHandle:
        if self._catalog and price_ref not in self._catalog.values():
            raise InvalidPlan(f"Price {price_ref} is not in the plan catalog")
        metadata = {"account_id": account_id, "plan_type": plan_type.value}
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_ref, "quantity": 1}],
            "client_reference_id": account_id,
            "success_url": f"{self._base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._base_url}/subscribe",
            "billing_address_collection": "auto",
        }
        if customer_email:
            params["customer_email"] = customer_email
        if promo_code and promotion_ref:
            params["discounts"] = [{"promotion_code": promotion_ref}]
            metadata["promo_code"] = promo_code
        else:
            params["allow_promotion_codes"] = True
        params["metadata"] = metadata
        params["subscription_data"] = {"metadata": dict(metadata)}

        try:
            session = await self._call(
                "checkout.create", lambda: self._sdk.checkout.Session.create(
                    api_key=self._api_key, **params
                )
            )
        except self._sdk.InvalidRequestError as exc:
            logger.warning(
                "stripe.checkout.invalid_request",
                extra={"price_ref": price_ref, "param": getattr(exc, "param", None)},
            )
            raise InvalidPlan(f"Price {price_ref} was rejected by the provider") from exc
        logger.info(
            "stripe.checkout.created",
            extra={"session_ref": session["id"], "plan_type": plan_type.value},
        )
        return CheckoutSessionHandle(checkout_url=session["url"], session_ref=session["id"])

    async def retrieve_session(self, session_ref: str) -> CheckoutSessionDetail:
        try:
            session = await self._call(
                "checkout.retrieve",
                lambda: self._sdk.checkout.Session.retrieve(session_ref, api_key=self._api_key),
            )
        except self._sdk.InvalidRequestError as exc:
            raise SessionNotFound(f"Checkout session {session_ref} not found") from exc
        payment_status = session.get("payment_status") or "unpaid"
        return CheckoutSessionDetail(
            session_ref=session.get("id") or session_ref,
            payment_status="paid" if payment_status in SETTLED_PAYMENT_STATUSES else payment_status,
            customer_ref=_ref(session.get("customer")),
            subscription_ref=_ref(session.get("subscription")),
            invoice_ref=_ref(session.get("invoice")),
            amount_total=int(session.get("amount_total") or 0),
            currency=session.get("currency") or "usd",
            metadata={key: str(value) for key, value in (session.get("metadata") or {}).items()},
        )

    async def retrieve_subscription_detail(self, subscription_ref: str) -> SubscriptionDetail:
        try:
            sub = await self._call(
                "subscription.retrieve",
                lambda: self._sdk.Subscription.retrieve(subscription_ref, api_key=self._api_key),
            )
        except self._sdk.InvalidRequestError as exc:
            raise SubscriptionMissing(f"Subscription {subscription_ref} not found") from exc
        return subscription_detail_from_payload(sub)

    async def validate_promotion_code(self, code: str) -> PromotionCodeCheck:
        normalized = (code or "").strip().upper()
        if not normalized:
            return PromotionCodeCheck(valid=False, code=normalized, reason="Promo code is required")
        listing = await self._call(
            "promotion_code.list",
            lambda: self._sdk.PromotionCode.list(
                code=normalized, active=True, limit=1, api_key=self._api_key
            ),
        )
        matches = list(listing.get("data") or [])
        if not matches:
            return PromotionCodeCheck(
                valid=False, code=normalized, reason="Invalid or expired promo code"
            )
        promotion = matches[0]
        coupon = _coupon(promotion)
        expires_at = _from_epoch(promotion.get("expires_at"))
        max_redemptions = promotion.get("max_redemptions")
        times_redeemed = int(promotion.get("times_redeemed") or 0)

        reason: str | None = None
        if not promotion.get("active", True):
            reason = "This promo code is no longer active"
        elif max_redemptions and times_redeemed >= max_redemptions:
            reason = "This promo code has reached its usage limit"
        elif expires_at and expires_at < datetime.now(UTC):
            reason = "This promo code has expired"
        elif not coupon.get("valid", True):
            reason = "This promo code is no longer valid"
        if reason:
            logger.info(
                "stripe.promo_code.rejected",
                extra={"promotion_ref": promotion.get("id"), "reason": reason},
            )
            return PromotionCodeCheck(
                valid=False,
                code=normalized,
                promotion_ref=promotion.get("id"),
                expires_at=expires_at,
                max_redemptions=max_redemptions,
                times_redeemed=times_redeemed,
                reason=reason,
            )

        percent_off = coupon.get("percent_off")
        amount_off = coupon.get("amount_off")
        if percent_off:
            discount_type, discount_value = "percentage", float(percent_off)
        else:
            discount_type, discount_value = "amount", (amount_off or 0) / 100
        return PromotionCodeCheck(
            valid=True,
            code=promotion.get("code") or normalized,
            promotion_ref=promotion.get("id"),
            discount_type=discount_type,
            discount_value=discount_value,
            currency=coupon.get("currency"),
            duration=coupon.get("duration"),
            duration_in_months=coupon.get("duration_in_months"),
            expires_at=expires_at,
            max_redemptions=max_redemptions,
            times_redeemed=times_redeemed,
            description=describe_discount(coupon),
        )

    async def create_portal_session(self, customer_ref: str, *, return_url: str) -> str:
        portal = await self._call(
            "billing_portal.create",
            lambda: self._sdk.billing_portal.Session.create(
                customer=customer_ref, return_url=return_url, api_key=self._api_key
            ),
        )
        return portal["url"]

    def verify_webhook(
        self, raw_body: bytes, signature_header: str | None, secret: str | None
    ) -> BillingEvent:
        """Verify the Stripe-Signature header and parse the event into a typed variant."""
        if not secret or not signature_header:
            raise InvalidSignature("Missing signature or webhook secret")
        try:
            payload = raw_body.decode("utf-8")
            self._sdk.WebhookSignature.verify_header(
                payload, signature_header, secret, tolerance=self._tolerance
            )
        except (self._sdk.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise InvalidSignature() from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise MalformedEvent("Event body is not valid JSON") from exc
        return parse_event(event)

    async def _call(self, operation: str, fn: Callable[[], _T]) -> _T:
        try:
            with metrics.timer("stripe.call", tags={"operation": operation}):
                return await with_timeout(
                    asyncio.to_thread(fn),
                    seconds=self._timeout,
                    operation=f"stripe.{operation}",
                    error=ProviderUnavailable,
                )
        except self._sdk.InvalidRequestError:
            raise
        except self._sdk.StripeError as exc:
            logger.warning(
                "stripe.call.failed",
                extra={"operation": operation, "error": type(exc).__name__},
            )
            raise ProviderUnavailable(f"stripe.{operation} failed") from exc


def parse_event(event: Mapping[str, Any]) -> BillingEvent:
    """Map a raw Stripe event into a closed set of typed variants."""
    event_type = event.get("type")
    event_id = event.get("id")
    if not event_type or not event_id:
        raise MalformedEvent("Event id and type are required")
    obj = (event.get("data") or {}).get("object") or {}
    base: dict[str, Any] = {
        "event_id": event_id,
        "event_type": event_type,
        "occurred_at": _from_epoch(event.get("created")) or datetime.now(UTC),
    }

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        payment_status = obj.get("payment_status") or "unpaid"
        if payment_status in SETTLED_PAYMENT_STATUSES:
            payment_status = "paid"
        payload = {
            **base,
            "kind": "checkout_completed",
            "session_ref": obj.get("id"),
            "account_id": metadata.get("account_id")
            or metadata.get("userId")
            or obj.get("client_reference_id"),
            "customer_ref": _ref(obj.get("customer")),
            "subscription_ref": _ref(obj.get("subscription")),
            "invoice_ref": _ref(obj.get("invoice")),
            "payment_status": payment_status,
            "amount_total": obj.get("amount_total") or 0,
            "currency": obj.get("currency") or "usd",
            "plan_type": metadata.get("plan_type") or metadata.get("planType") or "monthly",
            "promo_code": metadata.get("promo_code") or metadata.get("promoCode"),
        }
    elif event_type.startswith("invoice."):
        subscription_ref = _invoice_subscription(obj)
        kinds = {
            "invoice.paid": "invoice_paid",
            "invoice.payment_succeeded": "invoice_paid",
            "invoice.payment_failed": "invoice_payment_failed",
            "invoice.payment_action_required": "invoice_action_required",
        }
        kind = kinds.get(event_type)
        if kind is None or subscription_ref is None:
            payload = {**base, "kind": "unhandled"}
        else:
            amount_key = "amount_paid" if kind == "invoice_paid" else "amount_due"
            payload = {
                **base,
                "kind": kind,
                "subscription_ref": subscription_ref,
                "invoice_ref": obj.get("id"),
                "customer_ref": _ref(obj.get("customer")),
                "amount": obj.get(amount_key) or 0,
                "currency": obj.get("currency") or "usd",
                "invoice_url": obj.get("hosted_invoice_url"),
            }
    elif event_type == "customer.subscription.updated":
        detail = subscription_detail_from_payload(obj)
        payload = {
            **base,
            "kind": "subscription_updated",
            "subscription_ref": detail.subscription_ref,
            "status": detail.status,
            "current_period_start": detail.period_start,
            "current_period_end": detail.period_end,
            "cancel_at_period_end": detail.cancel_at_period_end,
            "price_ref": detail.price_ref,
            "discount_amount": detail.discount.amount_off if detail.discount else None,
            "discount_percentage": detail.discount.percent_off if detail.discount else None,
        }
    elif event_type == "customer.subscription.deleted":
        payload = {**base, "kind": "subscription_deleted", "subscription_ref": obj.get("id")}
    else:
        payload = {**base, "kind": "unhandled"}

    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        logger.warning(
            "stripe.webhook.malformed",
            extra={"event_id": event_id, "type": event_type, "errors": exc.error_count()},
        )
        raise MalformedEvent(f"Event {event_id} is missing required fields") from exc


def subscription_detail_from_payload(sub: Mapping[str, Any]) -> SubscriptionDetail:
    """Normalize a Stripe subscription object (webhook or API response)."""
    subscription_ref = sub.get("id")
    if not subscription_ref:
        raise MalformedEvent("Subscription payload has no id")
    items = ((sub.get("items") or {}).get("data")) or []
    first_item = items[0] if items else {}
    # Newer API versions report billing periods on the subscription item.
    period_start = sub.get("current_period_start") or first_item.get("current_period_start")
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")
    return SubscriptionDetail(
        subscription_ref=subscription_ref,
        status=SubscriptionStatus.from_provider(sub.get("status")),
        period_start=_from_epoch(period_start),
        period_end=_from_epoch(period_end),
        trial_start=_from_epoch(sub.get("trial_start")),
        trial_end=_from_epoch(sub.get("trial_end")),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        price_ref=_ref((first_item or {}).get("price")),
        discount=_discount(sub),
    )


def describe_discount(coupon: Mapping[str, Any]) -> str:
    """Build a human description such as ``20% off (for 3 months)``."""
    if coupon.get("percent_off"):
        description = f"{coupon['percent_off']:g}% off"
    elif coupon.get("amount_off"):
        description = f"${coupon['amount_off'] / 100:g} off"
    else:
        description = ""
    duration = coupon.get("duration")
    if duration == "once":
        description += " (one-time)"
    elif duration == "repeating":
        description += f" (for {coupon.get('duration_in_months')} months)"
    elif duration == "forever":
        description += " (forever)"
    return description.strip()


def _ref(value: Any) -> str | None:
    """Return the id of an expandable field that may be a string or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(int(value), tz=UTC)


def _coupon(promotion: Mapping[str, Any]) -> Mapping[str, Any]:
    coupon = promotion.get("coupon") or (promotion.get("promotion") or {}).get("coupon")
    return coupon if isinstance(coupon, Mapping) else {}


def _discount(sub: Mapping[str, Any]) -> Discount | None:
    discount = sub.get("discount")
    if not discount:
        discounts = [entry for entry in (sub.get("discounts") or []) if isinstance(entry, Mapping)]
        discount = discounts[0] if discounts else None
    if not discount:
        return None
    coupon = discount.get("coupon") or {}
    if not isinstance(coupon, Mapping):
        return None
    return Discount(amount_off=coupon.get("amount_off"), percent_off=coupon.get("percent_off"))


def _invoice_subscription(invoice: Mapping[str, Any]) -> str | None:
    direct = _ref(invoice.get("subscription"))
    if direct:
        return direct
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _ref(details.get("subscription"))
