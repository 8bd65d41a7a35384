"""Billing endpoints: checkout, reconciliation, webhooks, promo codes and access."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from app.api.dependencies import (
    get_access_gate,
    get_gateway,
    get_markers,
    get_reconciliation_engine,
    get_settings,
    get_store,
    optional_identity,
    require_active_subscription,
    require_identity,
)
from app.clients.identity import Identity
from app.clients.stripe_gateway import StripeGateway
from app.config import Settings
from app.core.timeouts import with_timeout
from app.models.subscription import PlanType, SubscriptionSnapshot
from app.observability.metrics import metrics
from app.services.billing.access import AccessGate, ReconciliationMarkers
from app.services.billing.errors import (
    BillingError,
    InvalidPlan,
    InvalidPromoCode,
    InvalidSignature,
    MalformedEvent,
    PersistenceFailed,
    ProviderUnavailable,
)
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.billing.store import EntitlementStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing", tags=["billing"])

PROMO_UNAVAILABLE_MESSAGE = "Unable to validate promo code at this time. Please try again later."


def _http_error(exc: BillingError) -> HTTPException:
    """Map a billing error code such as ``503_PROVIDER_UNAVAILABLE`` to an HTTP error."""
    prefix = exc.code.split("_", 1)[0]
    status_code = int(prefix) if prefix.isdigit() else 500
    return HTTPException(
        status_code=status_code,
        detail={
            "code": exc.code,
            "reason": exc.reason.value if exc.reason else None,
            "message": str(exc),
            "retryable": exc.retryable,
        },
    )


def _ensure_same_account(identity: Identity, account_id: str) -> None:
    if identity.account_id != account_id:
        logger.warning("billing.account_mismatch", extra={"account_id": identity.account_id})
        raise HTTPException(status_code=403, detail="Account does not match the signed-in user")


class WebhookResponse(BaseModel):
    received: bool
    duplicate: bool = False
    action: str | None = None


@router.post("/stripe/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    gateway: StripeGateway = Depends(get_gateway),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    """Verify and apply a Stripe event; unhandled, duplicate and stale events are acknowledged."""
    body = await request.body()
    try:
        event = gateway.verify_webhook(body, stripe_signature, settings.stripe_webhook_secret)
    except InvalidSignature as exc:
        logger.warning("stripe.webhook.rejected", extra={"code": exc.code})
        metrics.increment(
            "webhook.rejected", tags={"code": exc.code, "has_signature": bool(stripe_signature)}
        )
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MalformedEvent as exc:
        # Signed by Stripe but unusable; redelivery can never succeed, so acknowledge it.
        logger.error("stripe.webhook.malformed_acknowledged", extra={"code": exc.code})
        metrics.increment("webhook.malformed")
        return WebhookResponse(received=True, action="malformed")

    try:
        outcome = await engine.handle_event(event)
    except (PersistenceFailed, ProviderUnavailable) as exc:
        raise _http_error(exc) from exc
    return WebhookResponse(received=True, duplicate=outcome.duplicate, action=outcome.action)


class ReconcileRequest(BaseModel):
    session_ref: str = Field(min_length=1)
    account_id: str = Field(min_length=1)


class ReconcileResponse(BaseModel):
    success: bool
    state: str
    status: str | None = None
    plan_type: str | None = None
    current_period_end: datetime | None = None
    error: str | None = None
    reason: str | None = None
    retryable: bool = False


@router.post("/checkout/reconcile", response_model=ReconcileResponse)
async def reconcile_checkout(
    payload: ReconcileRequest,
    identity: Identity = Depends(require_identity),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    markers: ReconciliationMarkers = Depends(get_markers),
) -> ReconcileResponse:
    """Redirect-callback and manual re-validation entry point."""
    _ensure_same_account(identity, payload.account_id)
    markers.begin(payload.account_id)
    try:
        result = await engine.reconcile_checkout(payload.session_ref, payload.account_id)
    except PersistenceFailed as exc:
        raise _http_error(exc) from exc
    finally:
        markers.end(payload.account_id)

    snapshot = result.snapshot
    return ReconcileResponse(
        success=result.success,
        state=result.state.value,
        status=snapshot.status.value if snapshot else None,
        plan_type=snapshot.plan_type.value if snapshot and snapshot.plan_type else None,
        current_period_end=snapshot.current_period_end if snapshot else None,
        error=result.message if not result.success else None,
        reason=result.reason.value if result.reason else None,
        retryable=result.retryable,
    )


class PromoCodeRequest(BaseModel):
    code: str = ""


class DiscountInfo(BaseModel):
    type: str
    value: float
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None


class PromoCodeResponse(BaseModel):
    valid: bool
    code: str | None = None
    promotion_code_id: str | None = None
    discount: DiscountInfo | None = None
    description: str | None = None
    max_redemptions: int | None = None
    times_redeemed: int | None = None
    expires_at: datetime | None = None
    error: str | None = None


@router.post("/promo-codes/validate", response_model=PromoCodeResponse)
async def validate_promo_code(
    payload: PromoCodeRequest,
    _: Identity = Depends(require_identity),
    gateway: StripeGateway = Depends(get_gateway),
) -> PromoCodeResponse:
    """Look up a promotion code; an unusable code is a normal ``valid=false`` answer."""
    try:
        check = await gateway.validate_promotion_code(payload.code)
    except ProviderUnavailable:
        metrics.increment("promo_code.validation_unavailable")
        return PromoCodeResponse(valid=False, error=PROMO_UNAVAILABLE_MESSAGE)
    if not check.valid:
        return PromoCodeResponse(valid=False, code=check.code or None, error=check.reason)
    return PromoCodeResponse(
        valid=True,
        code=check.code,
        promotion_code_id=check.promotion_ref,
        discount=DiscountInfo(
            type=check.discount_type or "amount",
            value=check.discount_value,
            currency=check.currency,
            duration=check.duration,
            duration_in_months=check.duration_in_months,
        ),
        description=check.description,
        max_redemptions=check.max_redemptions,
        times_redeemed=check.times_redeemed,
        expires_at=check.expires_at,
    )


class CheckoutSessionRequest(BaseModel):
    account_id: str = Field(min_length=1)
    plan_type: PlanType
    price_ref: str | None = None
    promo_code: str | None = None


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_ref: str | None = None
    free_subscription: bool = False


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    payload: CheckoutSessionRequest,
    identity: Identity = Depends(require_identity),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    settings: Settings = Depends(get_settings),
) -> CheckoutSessionResponse:
    """Start checkout, or grant a free subscription outright for a 100%-off code."""
    _ensure_same_account(identity, payload.account_id)
    price_ref = payload.price_ref or settings.plan_prices.get(payload.plan_type.value)
    if not price_ref:
        raise _http_error(InvalidPlan(f"No price configured for the {payload.plan_type} plan"))
    try:
        start = await engine.start_checkout(
            account_id=payload.account_id,
            plan_type=payload.plan_type,
            price_ref=price_ref,
            promo_code=payload.promo_code,
            customer_email=identity.email,
        )
    except (InvalidPlan, InvalidPromoCode, ProviderUnavailable, PersistenceFailed) as exc:
        raise _http_error(exc) from exc

    if start.free_grant is not None:
        if not start.free_grant.success:
            raise HTTPException(
                status_code=409,
                detail={
                    "reason": start.free_grant.reason.value if start.free_grant.reason else None,
                    "message": start.free_grant.message,
                },
            )
        logger.info(
            "billing.checkout.free_grant",
            extra={"account_id": payload.account_id, "plan_type": payload.plan_type.value},
        )
        return CheckoutSessionResponse(checkout_url=settings.dashboard_url, free_subscription=True)
    return CheckoutSessionResponse(checkout_url=start.checkout_url, session_ref=start.session_ref)


@router.get("/subscription", response_model=SubscriptionSnapshot)
async def get_subscription(
    identity: Identity = Depends(require_identity),
    store: EntitlementStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> SubscriptionSnapshot:
    try:
        snapshot = await with_timeout(
            store.get_subscription(identity.account_id),
            seconds=settings.store_timeout_seconds,
            operation="store.get_subscription",
            error=PersistenceFailed,
        )
    except PersistenceFailed as exc:
        raise _http_error(exc) from exc
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return snapshot


class AccessResponse(BaseModel):
    allowed: bool
    reason: str
    message: str | None = None
    status: str | None = None


@router.get("/access", response_model=AccessResponse)
async def check_access(
    require_subscription: bool = Query(default=True),
    identity: Identity | None = Depends(optional_identity),
    gate: AccessGate = Depends(get_access_gate),
) -> AccessResponse:
    decision = await gate.can_access(
        identity.account_id if identity else None, require_subscription=require_subscription
    )
    return AccessResponse(
        allowed=decision.allowed,
        reason=decision.reason.value,
        message=decision.message,
        status=decision.status.value if decision.status else None,
    )


class PortalResponse(BaseModel):
    url: str


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    identity: Identity = Depends(require_active_subscription),
    store: EntitlementStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> PortalResponse:
    """Open the provider's customer billing portal for a paying account."""
    snapshot = await store.get_subscription(identity.account_id)
    customer_ref = snapshot.provider_customer_ref if snapshot else None
    if not customer_ref:
        raise HTTPException(status_code=409, detail="No billing account for this subscription")
    try:
        url = await gateway.create_portal_session(customer_ref, return_url=settings.dashboard_url)
    except ProviderUnavailable as exc:
        raise _http_error(exc) from exc
    return PortalResponse(url=url)
