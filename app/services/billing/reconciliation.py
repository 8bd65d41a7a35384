"""Checkout reconciliation: one transition function for redirect, webhook and free grants."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar
from uuid import uuid4

from app.clients.stripe_gateway import PromotionCodeCheck, StripeGateway, SubscriptionDetail
from app.core.timeouts import with_timeout
from app.models.billing_events import (
    BillingEvent,
    CheckoutCompleted,
    InvoiceActionRequired,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from app.models.subscription import (
    ENTITLED_STATUSES,
    BillingHistory,
    CheckoutAttempt,
    CheckoutState,
    PlanType,
    PromoCodeUsage,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from app.observability.metrics import metrics
from app.services.billing.errors import (
    BillingError,
    FailureReason,
    InvalidPromoCode,
    PaymentIncomplete,
    PersistenceFailed,
    ProviderUnavailable,
    SessionNotFound,
    StaleEvent,
    SubscriptionMissing,
    SubscriptionNotActive,
)
from app.services.billing.store import EntitlementStore, UpdateOutcome, UpdateStatus

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

FREE_GRANT_PERIODS = {
    PlanType.MONTHLY: timedelta(days=30),
    PlanType.YEARLY: timedelta(days=365),
}


@dataclass(frozen=True)
class CheckoutOutcome:
    """Normalized view of a checkout, whichever channel reported it."""

    session_ref: str
    account_id: str
    payment_status: str
    plan_type: PlanType
    subscription_ref: str | None = None
    customer_ref: str | None = None
    invoice_ref: str | None = None
    amount_total: int = 0
    currency: str = "usd"
    promo_code: str | None = None
    promotion_ref: str | None = None
    discount_type: str | None = None
    discount_value: float | None = None
    event_id: str | None = None
    occurred_at: datetime | None = None

    @property
    def is_free_grant(self) -> bool:
        return (
            self.subscription_ref is None
            and self.discount_type == "percentage"
            and (self.discount_value or 0) >= 100
        )

    @property
    def source(self) -> str:
        if self.event_id:
            return "webhook"
        return "free_grant" if self.session_ref.startswith("free_") else "redirect"


@dataclass(frozen=True)
class ReconciliationResult:
    state: CheckoutState
    session_ref: str
    snapshot: SubscriptionSnapshot | None = None
    reason: FailureReason | None = None
    message: str | None = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.state is CheckoutState.ENTITLED

    @classmethod
    def failed(cls, session_ref: str, error: BillingError) -> ReconciliationResult:
        return cls(
            state=CheckoutState.FAILED,
            session_ref=session_ref,
            reason=error.reason,
            message=str(error),
            retryable=error.retryable,
        )


@dataclass(frozen=True)
class CheckoutStart:
    """Result of starting checkout: a provider URL, or an immediate free grant."""

    checkout_url: str | None = None
    session_ref: str | None = None
    free_grant: ReconciliationResult | None = None

    @property
    def free_subscription(self) -> bool:
        return self.free_grant is not None


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    action: str
    duplicate: bool = False


class ReconciliationEngine:
    """Turns checkout reports into exactly one entitlement row per account.

    The redirect callback, manual re-validation, webhook deliveries and the
    free-grant bypass all normalize into a ``CheckoutOutcome`` and go through
    ``_settle``. Only the entitlement upsert is fatal; onboarding, ledger and
    promo-usage writes are best-effort and retried by later reconciliations.
    """

    def __init__(
        self,
        store: EntitlementStore,
        gateway: StripeGateway,
        *,
        store_timeout: float = 10.0,
        attempt_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._store_timeout = store_timeout
        self._attempt_ttl = attempt_ttl
        self._clock = clock or (lambda: datetime.now(UTC))

    async def start_checkout(
        self,
        *,
        account_id: str,
        plan_type: PlanType,
        price_ref: str,
        promo_code: str | None = None,
        customer_email: str | None = None,
    ) -> CheckoutStart:
        promo: PromotionCodeCheck | None = None
        if promo_code:
            promo = await self._gateway.validate_promotion_code(promo_code)
            if not promo.valid:
                raise InvalidPromoCode(promo.reason or "Invalid or expired promo code")
            if promo.is_full_discount:
                result = await self.grant_free(account_id, plan_type, promo, price_ref=price_ref)
                return CheckoutStart(free_grant=result)

        handle = await self._gateway.create_checkout_session(
            account_id=account_id,
            price_ref=price_ref,
            plan_type=plan_type,
            promo_code=promo.code if promo else None,
            promotion_ref=promo.promotion_ref if promo else None,
            customer_email=customer_email,
        )
        attempt = CheckoutAttempt(
            provider_session_ref=handle.session_ref,
            account_id=account_id,
            plan_type=plan_type.value,
            provider_price_ref=price_ref,
            promo_code=promo.code if promo else None,
            promotion_code_ref=promo.promotion_ref if promo else None,
            discount_type=promo.discount_type if promo else None,
            discount_value=promo.discount_value if promo else None,
        )
        await self._best_effort(
            "record_checkout_attempt",
            lambda: self._store.record_checkout_attempt(attempt),
            account_id=account_id,
            session_ref=handle.session_ref,
        )
        if customer_email:
            await self._best_effort(
                "account_profile",
                lambda: self._store.upsert_account_profile(account_id, email=customer_email),
                account_id=account_id,
                session_ref=handle.session_ref,
            )
        metrics.increment("checkout.started", tags={"plan_type": plan_type.value})
        return CheckoutStart(checkout_url=handle.checkout_url, session_ref=handle.session_ref)

    async def reconcile_checkout(self, session_ref: str, account_id: str) -> ReconciliationResult:
        """Redirect and manual re-validation path; retrieves the session from the provider."""
        logger.info(
            "billing.reconcile.started",
            extra={"session_ref": session_ref, "account_id": account_id, "source": "redirect"},
        )
        attempt = await self._store_call(
            "get_checkout_attempt", lambda: self._store.get_checkout_attempt(session_ref)
        )
        if attempt is not None and attempt.account_id != account_id:
            return self._fail(session_ref, account_id, SessionNotFound())
        replay = await self._replay(attempt)
        if replay is not None:
            return replay

        try:
            session = await self._gateway.retrieve_session(session_ref)
        except (ProviderUnavailable, SessionNotFound) as exc:
            return self._fail(session_ref, account_id, exc)
        owner = session.metadata.get("account_id") or session.metadata.get("userId")
        if owner and owner != account_id:
            logger.warning(
                "billing.reconcile.account_mismatch",
                extra={"session_ref": session_ref, "account_id": account_id},
            )
            return self._fail(session_ref, account_id, SessionNotFound())

        outcome = CheckoutOutcome(
            session_ref=session_ref,
            account_id=account_id,
            payment_status=session.payment_status,
            plan_type=_plan_type(
                attempt.plan_type if attempt else session.metadata.get("plan_type")
            ),
            subscription_ref=session.subscription_ref,
            customer_ref=session.customer_ref,
            invoice_ref=session.invoice_ref,
            amount_total=session.amount_total,
            currency=session.currency,
            **_promo_fields(attempt, session.metadata.get("promo_code")),
        )
        return await self._settle(outcome, attempt)

    async def grant_free(
        self,
        account_id: str,
        plan_type: PlanType,
        promo: PromotionCodeCheck,
        *,
        price_ref: str | None = None,
    ) -> ReconciliationResult:
        """Entitle an account for a 100%-off code without a provider checkout."""
        if not promo.is_full_discount:
            raise ValueError("grant_free requires a valid 100% promotion code")
        attempt = CheckoutAttempt(
            provider_session_ref=f"free_{uuid4().hex}",
            account_id=account_id,
            plan_type=plan_type.value,
            provider_price_ref=price_ref,
            promo_code=promo.code,
            promotion_code_ref=promo.promotion_ref,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
        )
        attempt = await self._store_call(
            "record_checkout_attempt", lambda: self._store.record_checkout_attempt(attempt)
        )
        outcome = CheckoutOutcome(
            session_ref=attempt.provider_session_ref,
            account_id=account_id,
            payment_status="paid",
            plan_type=plan_type,
            **_promo_fields(attempt, None),
        )
        return await self._settle(outcome, attempt)

    async def handle_event(self, event: BillingEvent) -> WebhookOutcome:
        """Apply one verified webhook event; duplicates and stale events are acknowledged."""
        already = await self._store_call(
            "has_processed_event", lambda: self._store.has_processed_event(event.event_id)
        )
        if already:
            logger.info(
                "stripe.webhook.duplicate",
                extra={"event_id": event.event_id, "type": event.event_type},
            )
            metrics.increment("webhook.duplicate", tags={"type": event.event_type})
            return WebhookOutcome(event.event_id, event.event_type, "duplicate", duplicate=True)

        try:
            action = await self._apply_event(event)
        except StaleEvent:
            logger.debug(
                "stripe.webhook.stale",
                extra={"event_id": event.event_id, "type": event.event_type},
            )
            metrics.increment("webhook.stale", tags={"type": event.event_type})
            action = "stale"

        await self._best_effort(
            "processed_event",
            lambda: self._store.record_processed_event(event.event_id, event.event_type),
            event_id=event.event_id,
        )
        logger.info(
            "stripe.webhook.processed",
            extra={"event_id": event.event_id, "type": event.event_type, "action": action},
        )
        metrics.increment("webhook.processed", tags={"type": event.event_type, "action": action})
        return WebhookOutcome(event.event_id, event.event_type, action)

    async def purge_expired_attempts(self) -> int:
        cutoff = self._clock() - self._attempt_ttl
        purged = await self._store_call(
            "purge_checkout_attempts", lambda: self._store.purge_checkout_attempts(cutoff)
        )
        if purged:
            logger.info("billing.attempts.purged", extra={"count": purged})
        return purged

    async def _apply_event(self, event: BillingEvent) -> str:
        if isinstance(event, CheckoutCompleted):
            return await self._apply_checkout_completed(event)
        if isinstance(event, InvoicePaid):
            update = await self._update_by_ref(
                event, {"status": SubscriptionStatus.ACTIVE.value}
            )
            await self._record_invoice(event, update, status="paid")
            return self._update_action(event, update, "status:active")
        if isinstance(event, InvoicePaymentFailed):
            update = await self._update_by_ref(
                event, {"status": SubscriptionStatus.PAST_DUE.value}
            )
            await self._record_invoice(event, update, status="failed")
            return self._update_action(event, update, "status:past_due")
        if isinstance(event, InvoiceActionRequired):
            update = await self._update_by_ref(
                event, {"status": SubscriptionStatus.INCOMPLETE.value}
            )
            return self._update_action(event, update, "status:incomplete")
        if isinstance(event, SubscriptionUpdated):
            fields: dict[str, Any] = {
                "status": event.status.value,
                "cancel_at_period_end": event.cancel_at_period_end,
                "discount_amount": event.discount_amount,
                "discount_percentage": event.discount_percentage,
            }
            if event.current_period_start is not None:
                fields["current_period_start"] = event.current_period_start
            if event.current_period_end is not None:
                fields["current_period_end"] = event.current_period_end
            if event.price_ref:
                fields["provider_price_ref"] = event.price_ref
            update = await self._update_by_ref(event, fields)
            return self._update_action(event, update, f"status:{event.status.value}")
        if isinstance(event, SubscriptionDeleted):
            update = await self._update_by_ref(
                event,
                {"status": SubscriptionStatus.CANCELED.value, "canceled_at": self._clock()},
            )
            return self._update_action(event, update, "status:canceled")
        logger.info(
            "stripe.webhook.skipped_event",
            extra={"event_id": event.event_id, "type": event.event_type},
        )
        return "ignored"

    async def _apply_checkout_completed(self, event: CheckoutCompleted) -> str:
        attempt = await self._store_call(
            "get_checkout_attempt", lambda: self._store.get_checkout_attempt(event.session_ref)
        )
        if await self._replay(attempt) is not None:
            return "already_entitled"
        outcome = CheckoutOutcome(
            session_ref=event.session_ref,
            account_id=event.account_id,
            payment_status=event.payment_status,
            plan_type=_plan_type(attempt.plan_type if attempt else event.plan_type),
            subscription_ref=event.subscription_ref,
            customer_ref=event.customer_ref,
            invoice_ref=event.invoice_ref,
            amount_total=event.amount_total,
            currency=event.currency,
            event_id=event.event_id,
            occurred_at=event.occurred_at,
            **_promo_fields(attempt, event.promo_code),
        )
        result = await self._settle(outcome, attempt)
        if result.reason is FailureReason.PROVIDER_UNAVAILABLE:
            # Unacknowledged so the provider redelivers once it is reachable again.
            raise ProviderUnavailable(result.message or "Payment provider unavailable")
        if result.success:
            return "entitled"
        return f"failed:{result.reason}"

    async def _settle(
        self, outcome: CheckoutOutcome, attempt: CheckoutAttempt | None
    ) -> ReconciliationResult:
        if outcome.payment_status != "paid":
            return self._fail(
                outcome.session_ref, outcome.account_id, PaymentIncomplete(outcome.payment_status)
            )

        if outcome.is_free_grant:
            await self._advance(attempt, CheckoutState.FREE_GRANT)
            fields = self._free_grant_fields(outcome)
        elif outcome.subscription_ref is None:
            logger.error(
                "billing.reconcile.subscription_missing",
                extra={"session_ref": outcome.session_ref, "account_id": outcome.account_id},
            )
            return await self._fail_attempt(outcome, attempt, SubscriptionMissing())
        else:
            await self._advance(attempt, CheckoutState.PAID_UNCONFIRMED)
            try:
                detail = await self._gateway.retrieve_subscription_detail(outcome.subscription_ref)
            except ProviderUnavailable as exc:
                return self._fail(outcome.session_ref, outcome.account_id, exc)
            except SubscriptionMissing as exc:
                return await self._fail_attempt(outcome, attempt, exc)
            if detail.status not in ENTITLED_STATUSES:
                return await self._fail_attempt(
                    outcome, attempt, SubscriptionNotActive(detail.status.value)
                )
            fields = self._paid_fields(outcome, detail)

        snapshot = await self._write_entitlement(outcome, attempt, fields)
        await self._record_side_effects(outcome, snapshot)
        await self._advance(attempt, CheckoutState.ENTITLED, consumed_at=self._clock())
        logger.info(
            "billing.reconcile.entitled",
            extra={
                "session_ref": outcome.session_ref,
                "account_id": outcome.account_id,
                "status": snapshot.status.value,
                "source": outcome.source,
            },
        )
        metrics.increment("reconcile.entitled", tags={"source": outcome.source})
        return ReconciliationResult(
            state=CheckoutState.ENTITLED, session_ref=outcome.session_ref, snapshot=snapshot
        )

    def _paid_fields(self, outcome: CheckoutOutcome, detail: SubscriptionDetail) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "provider_subscription_ref": detail.subscription_ref,
            "provider_price_ref": detail.price_ref,
            "status": detail.status.value,
            "plan_type": outcome.plan_type.value,
            "current_period_start": detail.period_start,
            "current_period_end": detail.period_end,
            "cancel_at_period_end": detail.cancel_at_period_end,
            "canceled_at": None,
            "trial_start": detail.trial_start,
            "trial_end": detail.trial_end,
            "promo_code": outcome.promo_code,
            "discount_amount": detail.discount.amount_off if detail.discount else None,
            "discount_percentage": detail.discount.percent_off if detail.discount else None,
        }
        if outcome.customer_ref:
            fields["provider_customer_ref"] = outcome.customer_ref
        return fields

    def _free_grant_fields(self, outcome: CheckoutOutcome) -> dict[str, Any]:
        now = self._clock()
        return {
            "provider_subscription_ref": None,
            "status": SubscriptionStatus.ACTIVE.value,
            "plan_type": outcome.plan_type.value,
            "current_period_start": now,
            "current_period_end": now + FREE_GRANT_PERIODS[outcome.plan_type],
            "cancel_at_period_end": False,
            "canceled_at": None,
            "trial_start": None,
            "trial_end": None,
            "promo_code": outcome.promo_code,
            "discount_amount": None,
            "discount_percentage": 100.0,
        }

    async def _write_entitlement(
        self,
        outcome: CheckoutOutcome,
        attempt: CheckoutAttempt | None,
        fields: dict[str, Any],
    ) -> SubscriptionSnapshot:
        try:
            snapshot = await self._store_call(
                "upsert_subscription",
                lambda: self._store.upsert_subscription(
                    outcome.account_id, fields, not_after=outcome.occurred_at
                ),
                shield=True,
            )
        except PersistenceFailed:
            logger.exception(
                "billing.reconcile.persist_failed",
                extra={
                    "session_ref": outcome.session_ref,
                    "account_id": outcome.account_id,
                    "source": outcome.source,
                },
            )
            metrics.alert(
                "reconcile.persist_failed", severity="critical", tags={"source": outcome.source}
            )
            await self._advance(
                attempt,
                CheckoutState.FAILED,
                failure_reason=FailureReason.PERSISTENCE_FAILED.value,
            )
            raise
        if snapshot is None:
            raise StaleEvent(outcome.event_id or outcome.session_ref)
        return snapshot

    async def _record_side_effects(
        self, outcome: CheckoutOutcome, snapshot: SubscriptionSnapshot
    ) -> None:
        context = {"account_id": outcome.account_id, "session_ref": outcome.session_ref}
        await self._best_effort(
            "onboarding",
            lambda: self._store.mark_onboarding_completed(outcome.account_id),
            **context,
        )
        if outcome.amount_total > 0:
            # Keyed by the first invoice so its invoice.paid event dedups against this row.
            entry = BillingHistory(
                dedup_key=outcome.invoice_ref or outcome.session_ref,
                provider_invoice_ref=outcome.invoice_ref,
                account_id=outcome.account_id,
                subscription_id=snapshot.id,
                amount=outcome.amount_total,
                currency=outcome.currency,
                status="paid",
                paid_at=self._clock(),
            )
            await self._best_effort(
                "billing_history", lambda: self._store.append_billing_history(entry), **context
            )
        if outcome.promo_code:
            usage = PromoCodeUsage(
                dedup_key=outcome.session_ref,
                account_id=outcome.account_id,
                subscription_id=snapshot.id,
                promo_code=outcome.promo_code,
                provider_promotion_ref=outcome.promotion_ref,
                discount_type=outcome.discount_type,
                discount_value=outcome.discount_value or 0.0,
                applied_at=self._clock(),
                usage_metadata={
                    "session_ref": outcome.session_ref,
                    "plan_type": outcome.plan_type.value,
                    "source": outcome.source,
                    "free_grant": outcome.is_free_grant,
                },
            )
            await self._best_effort(
                "promo_usage", lambda: self._store.append_promo_usage(usage), **context
            )

    async def _update_by_ref(
        self,
        event: InvoicePaid | InvoicePaymentFailed | InvoiceActionRequired
        | SubscriptionUpdated | SubscriptionDeleted,
        fields: dict[str, Any],
    ) -> UpdateOutcome:
        return await self._store_call(
            "update_by_provider_ref",
            lambda: self._store.update_by_provider_ref(
                event.subscription_ref, fields, not_after=event.occurred_at
            ),
            shield=True,
        )

    def _update_action(self, event: BillingEvent, update: UpdateOutcome, applied: str) -> str:
        if update.status is UpdateStatus.STALE:
            raise StaleEvent(event.event_id)
        if update.status is UpdateStatus.NOT_FOUND:
            logger.warning(
                "stripe.webhook.subscription_unknown",
                extra={"event_id": event.event_id, "type": event.event_type},
            )
            return "unknown_subscription"
        return applied

    async def _record_invoice(
        self,
        event: InvoicePaid | InvoicePaymentFailed,
        update: UpdateOutcome,
        *,
        status: str,
    ) -> None:
        if update.snapshot is None:
            return
        entry = BillingHistory(
            dedup_key=event.invoice_ref,
            account_id=update.snapshot.account_id,
            subscription_id=update.snapshot.id,
            provider_invoice_ref=event.invoice_ref,
            amount=event.amount,
            currency=event.currency,
            status=status,
            invoice_url=event.invoice_url,
            paid_at=event.occurred_at if status == "paid" else None,
        )
        await self._best_effort(
            "billing_history",
            lambda: self._store.append_billing_history(entry),
            account_id=update.snapshot.account_id,
            event_id=event.event_id,
        )

    async def _replay(self, attempt: CheckoutAttempt | None) -> ReconciliationResult | None:
        if attempt is None or attempt.consumed_at is None:
            return None
        snapshot = await self._store_call(
            "get_subscription", lambda: self._store.get_subscription(attempt.account_id)
        )
        if snapshot is None:
            return None
        logger.info(
            "billing.reconcile.replayed",
            extra={"session_ref": attempt.provider_session_ref, "account_id": attempt.account_id},
        )
        metrics.increment("reconcile.replayed")
        return ReconciliationResult(
            state=CheckoutState.ENTITLED,
            session_ref=attempt.provider_session_ref,
            snapshot=snapshot,
        )

    async def _fail_attempt(
        self, outcome: CheckoutOutcome, attempt: CheckoutAttempt | None, error: BillingError
    ) -> ReconciliationResult:
        await self._advance(
            attempt,
            CheckoutState.FAILED,
            failure_reason=error.reason.value if error.reason else None,
        )
        return self._fail(outcome.session_ref, outcome.account_id, error)

    def _fail(self, session_ref: str, account_id: str, error: BillingError) -> ReconciliationResult:
        logger.warning(
            "billing.reconcile.failed",
            extra={
                "session_ref": session_ref,
                "account_id": account_id,
                "reason": error.reason.value if error.reason else None,
                "code": error.code,
                "retryable": error.retryable,
            },
        )
        metrics.increment(
            "reconcile.failed", tags={"reason": error.reason.value if error.reason else "unknown"}
        )
        return ReconciliationResult.failed(session_ref, error)

    async def _advance(
        self, attempt: CheckoutAttempt | None, state: CheckoutState, **changes: Any
    ) -> None:
        if attempt is None:
            return
        session_ref = attempt.provider_session_ref
        await self._best_effort(
            "checkout_attempt",
            lambda: self._store.update_checkout_attempt(
                session_ref, state=state.value, **changes
            ),
            session_ref=session_ref,
        )

    async def _best_effort(
        self, step: str, call: Callable[[], Awaitable[Any]], **context: Any
    ) -> bool:
        try:
            await self._store_call(step, call)
        except BillingError as exc:
            logger.warning(
                "billing.reconcile.side_write_failed",
                extra={"step": step, "error": type(exc).__name__, **context},
            )
            metrics.increment("reconcile.side_write_failed", tags={"step": step})
            return False
        return True

    async def _store_call(
        self, operation: str, call: Callable[[], Awaitable[_T]], *, shield: bool = False
    ) -> _T:
        return await with_timeout(
            call(),
            seconds=self._store_timeout,
            operation=f"store.{operation}",
            error=PersistenceFailed,
            shield=shield,
        )


def _plan_type(value: str | PlanType | None) -> PlanType:
    try:
        return PlanType(value or PlanType.MONTHLY)
    except ValueError:
        return PlanType.MONTHLY


def _promo_fields(attempt: CheckoutAttempt | None, fallback_code: str | None) -> dict[str, Any]:
    if attempt is not None and attempt.promo_code:
        return {
            "promo_code": attempt.promo_code,
            "promotion_ref": attempt.promotion_code_ref,
            "discount_type": attempt.discount_type,
            "discount_value": attempt.discount_value,
        }
    return {"promo_code": fallback_code}
