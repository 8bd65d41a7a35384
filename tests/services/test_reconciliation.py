from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from app.clients.stripe_gateway import PromotionCodeCheck, parse_event
from app.models.subscription import CheckoutState, PlanType, SubscriptionStatus
from app.services.billing.access import AccessGate, AccessReason, ReconciliationMarkers
from app.services.billing.errors import (
    FailureReason,
    InvalidPromoCode,
    PersistenceFailed,
    ProviderUnavailable,
)
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.billing.store import InMemoryEntitlementStore
from tests.helpers.fake_stripe import checkout_completed_event, invoice_event, stripe_event

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _future(seconds: int = 60) -> datetime:
    """Event timestamps newer than any write made during the test."""
    return datetime.now(UTC) + timedelta(seconds=seconds)


async def _start_paid_checkout(reconciler, fake_stripe, *, account_id="acct-1", promo_code=None):
    start = await reconciler.start_checkout(
        account_id=account_id,
        plan_type=PlanType.MONTHLY,
        price_ref="price_monthly",
        promo_code=promo_code,
        customer_email="founder@example.com",
    )
    fake_stripe.add_subscription("sub_1")
    fake_stripe.complete_session(start.session_ref, subscription="sub_1", customer="cus_1")
    return start


class FlakyStore(InMemoryEntitlementStore):
    """In-memory store whose selected operations raise PersistenceFailed."""

    def __init__(self, failing: set[str], *, failures: int = 1_000) -> None:
        super().__init__()
        self.failing = failing
        self.remaining = failures

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing and self.remaining > 0:
            self.remaining -= 1
            raise PersistenceFailed(f"{operation} unavailable")

    async def upsert_subscription(self, account_id, fields, *, not_after=None):
        self._maybe_fail("upsert_subscription")
        return await super().upsert_subscription(account_id, fields, not_after=not_after)

    async def append_billing_history(self, entry):
        self._maybe_fail("append_billing_history")
        return await super().append_billing_history(entry)

    async def mark_onboarding_completed(self, account_id):
        self._maybe_fail("mark_onboarding_completed")
        await super().mark_onboarding_completed(account_id)


@pytest.mark.asyncio
async def test_redirect_reconciliation_entitles_paid_checkout(
    reconciler, memory_store, fake_stripe, stub_metrics
):
    start = await _start_paid_checkout(reconciler, fake_stripe)

    result = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert result.success
    assert result.state is CheckoutState.ENTITLED
    snapshot = result.snapshot
    assert snapshot.status is SubscriptionStatus.ACTIVE
    assert snapshot.plan_type is PlanType.MONTHLY
    assert snapshot.provider_subscription_ref == "sub_1"
    assert snapshot.provider_customer_ref == "cus_1"

    attempt = await memory_store.get_checkout_attempt(start.session_ref)
    assert attempt.state == CheckoutState.ENTITLED.value
    assert attempt.consumed_at is not None
    profile = await memory_store.get_account_profile("acct-1")
    assert profile.onboarding_completed is True
    assert profile.email == "founder@example.com"
    [entry] = memory_store.billing_history
    assert entry.dedup_key == start.session_ref
    assert entry.amount == 2900
    assert stub_metrics.metrics_named("reconcile.entitled")[0]["tags"] == {"source": "redirect"}


@pytest.mark.asyncio
async def test_reconciling_a_consumed_session_replays_without_provider_calls(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    first = await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    calls_before = list(fake_stripe.calls)

    second = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert second.success
    assert second.snapshot.id == first.snapshot.id
    assert fake_stripe.calls == calls_before
    assert len(memory_store.billing_history) == 1


@pytest.mark.asyncio
async def test_webhook_after_redirect_is_acknowledged_as_already_entitled(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    redirect = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    event = parse_event(checkout_completed_event(fake_stripe.sessions[start.session_ref]))
    outcome = await reconciler.handle_event(event)

    assert outcome.action == "already_entitled"
    assert (await memory_store.get_subscription("acct-1")).id == redirect.snapshot.id
    assert len(memory_store.billing_history) == 1


@pytest.mark.asyncio
async def test_webhook_first_then_redirect_converges_on_one_row(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    event = parse_event(
        checkout_completed_event(fake_stripe.sessions[start.session_ref], created=_future())
    )

    outcome = await reconciler.handle_event(event)
    assert outcome.action == "entitled"
    webhook_snapshot = await memory_store.get_subscription("acct-1")

    redirect = await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    assert redirect.success
    assert redirect.snapshot.id == webhook_snapshot.id
    assert redirect.snapshot.status is SubscriptionStatus.ACTIVE
    assert len(memory_store.billing_history) == 1


@pytest.mark.asyncio
async def test_concurrent_redirect_and_webhook_produce_single_entitlement(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    event = parse_event(checkout_completed_event(fake_stripe.sessions[start.session_ref]))

    redirect, webhook = await asyncio.gather(
        reconciler.reconcile_checkout(start.session_ref, "acct-1"),
        reconciler.handle_event(event),
    )

    assert redirect.success
    assert webhook.action in {"entitled", "already_entitled", "stale"}
    snapshot = await memory_store.get_subscription("acct-1")
    assert snapshot.is_entitled
    assert snapshot.provider_subscription_ref == "sub_1"


@pytest.mark.asyncio
async def test_webhook_checkout_without_recorded_attempt_entitles(
    reconciler, memory_store, fake_stripe
):
    fake_stripe.add_subscription("sub_9", customer="cus_9")
    session = fake_stripe.add_session(
        "cs_external",
        account_id="acct-9",
        subscription="sub_9",
        customer="cus_9",
        plan_type="yearly",
    )

    outcome = await reconciler.handle_event(
        parse_event(checkout_completed_event(session, created=_future()))
    )

    assert outcome.action == "entitled"
    snapshot = await memory_store.get_subscription("acct-9")
    assert snapshot.plan_type is PlanType.YEARLY
    assert snapshot.provider_customer_ref == "cus_9"


@pytest.mark.asyncio
async def test_unpaid_session_fails_as_payment_incomplete(reconciler, memory_store):
    start = await reconciler.start_checkout(
        account_id="acct-1", plan_type=PlanType.MONTHLY, price_ref="price_monthly"
    )

    result = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert not result.success
    assert result.reason is FailureReason.PAYMENT_INCOMPLETE
    assert result.retryable is True
    assert await memory_store.get_subscription("acct-1") is None


@pytest.mark.asyncio
async def test_inactive_provider_subscription_is_not_entitled(
    reconciler, memory_store, fake_stripe
):
    start = await reconciler.start_checkout(
        account_id="acct-1", plan_type=PlanType.MONTHLY, price_ref="price_monthly"
    )
    fake_stripe.add_subscription("sub_1", status="incomplete")
    fake_stripe.complete_session(start.session_ref, subscription="sub_1")

    result = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert result.reason is FailureReason.SUBSCRIPTION_NOT_ACTIVE
    assert not result.retryable
    attempt = await memory_store.get_checkout_attempt(start.session_ref)
    assert attempt.state == CheckoutState.FAILED.value
    assert attempt.failure_reason == FailureReason.SUBSCRIPTION_NOT_ACTIVE.value
    assert await memory_store.get_subscription("acct-1") is None


@pytest.mark.asyncio
async def test_paid_session_without_subscription_fails_as_missing(reconciler, fake_stripe):
    start = await reconciler.start_checkout(
        account_id="acct-1", plan_type=PlanType.MONTHLY, price_ref="price_monthly"
    )
    fake_stripe.complete_session(start.session_ref, subscription=None)

    result = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert result.reason is FailureReason.SUBSCRIPTION_MISSING


@pytest.mark.asyncio
async def test_provider_outage_is_retryable_and_later_succeeds(reconciler, fake_stripe):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    fake_stripe.fail("checkout.Session.retrieve")

    failed = await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    assert failed.reason is FailureReason.PROVIDER_UNAVAILABLE
    assert failed.retryable is True

    fake_stripe.failures.clear()
    recovered = await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    assert recovered.success


@pytest.mark.asyncio
async def test_session_owned_by_another_account_is_not_found(reconciler, fake_stripe):
    start = await _start_paid_checkout(reconciler, fake_stripe)

    result = await reconciler.reconcile_checkout(start.session_ref, "acct-2")

    assert result.reason is FailureReason.SESSION_NOT_FOUND
    assert not result.success


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(reconciler):
    result = await reconciler.reconcile_checkout("cs_does_not_exist", "acct-1")

    assert result.reason is FailureReason.SESSION_NOT_FOUND


@pytest.mark.asyncio
async def test_full_discount_promo_grants_without_provider_checkout(
    memory_store, gateway, fake_stripe, stub_metrics
):
    reconciler = ReconciliationEngine(memory_store, gateway, clock=lambda: FIXED_NOW)
    fake_stripe.add_promotion_code("FOUNDERS", percent_off=100, duration="forever")

    start = await reconciler.start_checkout(
        account_id="acct-1",
        plan_type=PlanType.YEARLY,
        price_ref="price_yearly",
        promo_code=" founders ",
    )

    assert start.free_subscription
    assert start.checkout_url is None
    assert "checkout.Session.create" not in fake_stripe.calls
    snapshot = start.free_grant.snapshot
    assert snapshot.status is SubscriptionStatus.ACTIVE
    assert snapshot.provider_subscription_ref is None
    assert snapshot.discount_percentage == 100
    assert snapshot.is_comped
    assert snapshot.current_period_start == FIXED_NOW
    assert snapshot.current_period_end == FIXED_NOW + timedelta(days=365)
    assert memory_store.billing_history == []
    [usage] = memory_store.promo_usage
    assert usage.promo_code == "FOUNDERS"
    assert usage.dedup_key.startswith("free_")
    assert usage.usage_metadata["free_grant"] is True
    attempt = await memory_store.get_checkout_attempt(usage.dedup_key)
    assert attempt.state == CheckoutState.ENTITLED.value


@pytest.mark.asyncio
async def test_grant_free_rejects_partial_discounts(reconciler):
    promo = PromotionCodeCheck(
        valid=True, code="SAVE20", discount_type="percentage", discount_value=20.0
    )

    with pytest.raises(ValueError):
        await reconciler.grant_free("acct-1", PlanType.MONTHLY, promo)


@pytest.mark.asyncio
async def test_partial_discount_promo_is_recorded_once(reconciler, memory_store, fake_stripe):
    fake_stripe.add_promotion_code(
        "SAVE20", percent_off=20, duration="repeating", duration_in_months=3
    )
    start = await _start_paid_checkout(reconciler, fake_stripe, promo_code="save20")

    assert fake_stripe.created_sessions[0]["discounts"] == [{"promotion_code": "promo_save20"}]
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    event = parse_event(checkout_completed_event(fake_stripe.sessions[start.session_ref]))
    await reconciler.handle_event(event)

    [usage] = memory_store.promo_usage
    assert usage.promo_code == "SAVE20"
    assert usage.discount_value == 20.0
    assert usage.dedup_key == start.session_ref
    assert (await memory_store.get_subscription("acct-1")).promo_code == "SAVE20"


@pytest.mark.asyncio
async def test_invalid_promo_code_blocks_checkout(reconciler, fake_stripe):
    with pytest.raises(InvalidPromoCode):
        await reconciler.start_checkout(
            account_id="acct-1",
            plan_type=PlanType.MONTHLY,
            price_ref="price_monthly",
            promo_code="NOPE",
        )
    assert "checkout.Session.create" not in fake_stripe.calls


@pytest.mark.asyncio
async def test_persistence_failure_is_fatal_and_alerted(gateway, fake_stripe, stub_metrics):
    store = FlakyStore({"upsert_subscription"})
    reconciler = ReconciliationEngine(store, gateway)
    start = await _start_paid_checkout(reconciler, fake_stripe)

    with pytest.raises(PersistenceFailed):
        await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert stub_metrics.alert_calls[0]["metric"] == "reconcile.persist_failed"
    assert stub_metrics.alert_calls[0]["severity"] == "critical"
    attempt = await store.get_checkout_attempt(start.session_ref)
    assert attempt.state == CheckoutState.FAILED.value
    assert attempt.failure_reason == FailureReason.PERSISTENCE_FAILED.value
    assert await store.get_subscription("acct-1") is None


@pytest.mark.asyncio
async def test_failed_side_writes_do_not_block_entitlement(gateway, fake_stripe, stub_metrics):
    store = FlakyStore({"append_billing_history", "mark_onboarding_completed"}, failures=2)
    reconciler = ReconciliationEngine(store, gateway)
    start = await _start_paid_checkout(reconciler, fake_stripe)

    result = await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    assert result.success
    assert store.billing_history == []
    failed_steps = {
        call["tags"]["step"] for call in stub_metrics.metrics_named("reconcile.side_write_failed")
    }
    assert failed_steps == {"onboarding", "billing_history"}

    gate = AccessGate(store, ReconciliationMarkers())
    decision = await gate.can_access("acct-1")
    assert decision.allowed
    assert decision.reason is AccessReason.ACTIVE_SUBSCRIPTION
    assert (await store.get_account_profile("acct-1")).onboarding_completed is True


@pytest.mark.asyncio
async def test_invoice_events_update_status_and_ledger(reconciler, memory_store, fake_stripe):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    gate = AccessGate(memory_store, ReconciliationMarkers())

    failed = parse_event(
        invoice_event(
            "invoice.payment_failed",
            subscription="sub_1",
            invoice_id="in_2",
            event_id="evt_failed",
            created=_future(60),
        )
    )
    assert (await reconciler.handle_event(failed)).action == "status:past_due"
    decision = await gate.can_access("acct-1")
    assert not decision.allowed
    assert decision.reason is AccessReason.PAST_DUE

    paid = parse_event(
        invoice_event(
            "invoice.payment_succeeded",
            subscription="sub_1",
            invoice_id="in_3",
            event_id="evt_paid",
            created=_future(120),
        )
    )
    assert (await reconciler.handle_event(paid)).action == "status:active"
    assert (await gate.can_access("acct-1")).allowed

    statuses = {entry.dedup_key: entry.status for entry in memory_store.billing_history}
    assert statuses == {start.session_ref: "paid", "in_2": "failed", "in_3": "paid"}


@pytest.mark.asyncio
async def test_out_of_order_subscription_update_is_acknowledged_as_stale(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    newer = stripe_event(
        "customer.subscription.updated",
        {**fake_stripe.subscriptions["sub_1"], "status": "past_due"},
        event_id="evt_newer",
        created=_future(120),
    )
    older = stripe_event(
        "customer.subscription.updated",
        {**fake_stripe.subscriptions["sub_1"], "status": "active", "cancel_at_period_end": True},
        event_id="evt_older",
        created=_future(60),
    )

    assert (await reconciler.handle_event(parse_event(newer))).action == "status:past_due"
    stale = await reconciler.handle_event(parse_event(older))

    assert stale.action == "stale"
    assert stale.duplicate is False
    snapshot = await memory_store.get_subscription("acct-1")
    assert snapshot.status is SubscriptionStatus.PAST_DUE
    assert snapshot.cancel_at_period_end is False
    assert await memory_store.has_processed_event("evt_older")


@pytest.mark.asyncio
async def test_duplicate_delivery_is_acknowledged_without_reapplying(reconciler, fake_stripe):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")
    event = parse_event(
        stripe_event(
            "customer.subscription.deleted",
            {"id": "sub_1", "object": "subscription", "status": "canceled"},
            event_id="evt_deleted",
            created=_future(),
        )
    )

    first = await reconciler.handle_event(event)
    second = await reconciler.handle_event(event)

    assert first.action == "status:canceled"
    assert second.duplicate is True
    assert second.action == "duplicate"


@pytest.mark.asyncio
async def test_subscription_deleted_revokes_access(reconciler, memory_store, fake_stripe):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    await reconciler.handle_event(
        parse_event(
            stripe_event(
                "customer.subscription.deleted",
                {"id": "sub_1", "object": "subscription"},
                event_id="evt_deleted",
                created=_future(),
            )
        )
    )

    snapshot = await memory_store.get_subscription("acct-1")
    assert snapshot.status is SubscriptionStatus.CANCELED
    assert snapshot.canceled_at is not None
    decision = await AccessGate(memory_store, ReconciliationMarkers()).can_access("acct-1")
    assert decision.reason is AccessReason.CANCELED


@pytest.mark.asyncio
async def test_events_for_unknown_or_unhandled_objects_are_acknowledged(reconciler):
    unknown = parse_event(
        invoice_event("invoice.paid", subscription="sub_unknown", event_id="evt_unknown")
    )
    unhandled = parse_event(
        stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_customer")
    )

    assert (await reconciler.handle_event(unknown)).action == "unknown_subscription"
    assert (await reconciler.handle_event(unhandled)).action == "ignored"


@pytest.mark.asyncio
async def test_webhook_provider_outage_is_left_for_redelivery(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    fake_stripe.fail("Subscription.retrieve")
    event = parse_event(checkout_completed_event(fake_stripe.sessions[start.session_ref]))

    with pytest.raises(ProviderUnavailable):
        await reconciler.handle_event(event)

    assert await memory_store.has_processed_event(event.event_id) is False
    fake_stripe.failures.clear()
    assert (await reconciler.handle_event(event)).action == "entitled"


@pytest.mark.asyncio
async def test_purge_expired_attempts_uses_ttl(memory_store, gateway, fake_stripe):
    reconciler = ReconciliationEngine(
        memory_store,
        gateway,
        attempt_ttl=timedelta(days=7),
        clock=lambda: datetime.now(UTC) + timedelta(days=8),
    )
    await reconciler.start_checkout(
        account_id="acct-1", plan_type=PlanType.MONTHLY, price_ref="price_monthly"
    )

    assert await reconciler.purge_expired_attempts() == 1
    assert await reconciler.purge_expired_attempts() == 0


@pytest.mark.asyncio
async def test_first_invoice_of_a_checkout_is_recorded_once(
    reconciler, memory_store, fake_stripe
):
    start = await reconciler.start_checkout(
        account_id="acct-1", plan_type=PlanType.MONTHLY, price_ref="price_monthly"
    )
    fake_stripe.add_subscription("sub_1")
    fake_stripe.complete_session(start.session_ref, subscription="sub_1", invoice="in_first")
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    first_invoice = parse_event(
        invoice_event(
            "invoice.paid",
            subscription="sub_1",
            invoice_id="in_first",
            event_id="evt_first_invoice",
            created=_future(),
        )
    )
    assert (await reconciler.handle_event(first_invoice)).action == "status:active"

    [entry] = memory_store.billing_history
    assert entry.dedup_key == "in_first"
    assert entry.provider_invoice_ref == "in_first"
    assert entry.status == "paid"
    assert entry.amount == 2900


@pytest.mark.asyncio
async def test_payment_failure_older_than_the_row_does_not_revoke_access(
    reconciler, memory_store, fake_stripe
):
    start = await _start_paid_checkout(reconciler, fake_stripe)
    await reconciler.reconcile_checkout(start.session_ref, "acct-1")

    late_failure = parse_event(
        invoice_event(
            "invoice.payment_failed",
            subscription="sub_1",
            invoice_id="in_old",
            event_id="evt_old_failure",
            created=datetime.now(UTC) - timedelta(minutes=5),
        )
    )
    outcome = await reconciler.handle_event(late_failure)

    assert outcome.action == "stale"
    snapshot = await memory_store.get_subscription("acct-1")
    assert snapshot.status is SubscriptionStatus.ACTIVE
    decision = await AccessGate(memory_store, ReconciliationMarkers()).can_access("acct-1")
    assert decision.allowed


@pytest.mark.asyncio
async def test_monthly_free_grant_runs_for_thirty_days(memory_store, gateway, stub_metrics):
    reconciler = ReconciliationEngine(memory_store, gateway, clock=lambda: FIXED_NOW)
    promo = PromotionCodeCheck(
        valid=True,
        code="FREE100",
        promotion_ref="promo_free100",
        discount_type="percentage",
        discount_value=100.0,
    )

    result = await reconciler.grant_free("acct-1", PlanType.MONTHLY, promo)

    assert result.success
    snapshot = result.snapshot
    assert snapshot.status is SubscriptionStatus.ACTIVE
    assert snapshot.plan_type is PlanType.MONTHLY
    assert snapshot.provider_subscription_ref is None
    assert snapshot.discount_percentage == 100
    assert snapshot.current_period_start == FIXED_NOW
    assert snapshot.current_period_end == FIXED_NOW + timedelta(days=30)
