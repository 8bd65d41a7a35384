from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from app.clients.checkout_orchestrator import (
    CheckoutOrchestrator,
    CheckoutPhase,
    NextAction,
    strip_session_param,
)

LANDING = "https://app.test/checkout/success?session_id=cs_1&plan=monthly"


class ReconcileServer:
    """Scripted responses for POST /billing/checkout/reconcile."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(
            {
                "path": request.url.path,
                "body": json.loads(request.content),
                "authorization": request.headers.get("Authorization"),
            }
        )
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _entitled(plan_type: str = "monthly") -> httpx.Response:
    return httpx.Response(
        200,
        json={"success": True, "state": "ENTITLED", "status": "active", "plan_type": plan_type},
    )


def _failed(reason: str, *, retryable: bool = False) -> httpx.Response:
    return httpx.Response(
        200,
        json={"success": False, "state": "FAILED", "reason": reason, "retryable": retryable},
    )


def _orchestrator(server: ReconcileServer, **kwargs):
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(server), base_url="https://api.test"
    )
    orchestrator = CheckoutOrchestrator(
        "https://api.test",
        account_id="acct-1",
        access_token="token-acct-1",
        http_client=http_client,
        sleep=fake_sleep,
        **kwargs,
    )
    return orchestrator, sleeps


def test_strip_session_param_keeps_other_query_params():
    assert strip_session_param(LANDING) == "https://app.test/checkout/success?plan=monthly"
    assert strip_session_param("https://app.test/done?session_id=cs_1") == "https://app.test/done"


@pytest.mark.asyncio
async def test_successful_reconciliation_leads_to_dashboard():
    server = ReconcileServer(_entitled("yearly"))
    orchestrator, sleeps = _orchestrator(server)

    view = await orchestrator.run(LANDING)

    assert view.state is CheckoutPhase.ENTITLED
    assert view.next_action is NextAction.GO_TO_DASHBOARD
    assert view.plan_type == "yearly"
    assert view.clean_url == "https://app.test/checkout/success?plan=monthly"
    assert view.attempts == 1
    assert sleeps == []
    assert server.requests == [
        {
            "path": "/billing/checkout/reconcile",
            "body": {"session_ref": "cs_1", "account_id": "acct-1"},
            "authorization": "Bearer token-acct-1",
        }
    ]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff():
    server = ReconcileServer(
        httpx.Response(503, json={"detail": {"reason": "provider_unavailable"}}),
        httpx.ConnectError("connection reset"),
        _entitled(),
    )
    orchestrator, sleeps = _orchestrator(server, base_delay=0.5)

    view = await orchestrator.run(LANDING)

    assert view.state is CheckoutPhase.ENTITLED
    assert view.attempts == 3
    assert len(sleeps) == 2
    assert 0.5 <= sleeps[0] < sleeps[1]


@pytest.mark.asyncio
async def test_exhausted_retries_offer_manual_retry():
    server = ReconcileServer(_failed("provider_unavailable", retryable=True))
    orchestrator, sleeps = _orchestrator(server, max_attempts=3)

    view = await orchestrator.run(LANDING)

    assert view.state is CheckoutPhase.FAILED
    assert view.reason == "provider_unavailable"
    assert view.next_action is NextAction.TRY_AGAIN
    assert view.transient
    assert orchestrator.can_retry
    assert len(server.requests) == 3
    assert len(sleeps) == 2

    server.responses = [_entitled()]
    retried = await orchestrator.retry()

    assert retried.state is CheckoutPhase.ENTITLED
    assert not orchestrator.can_retry
    assert len(server.requests) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "reason", "action"),
    [
        (
            _failed("payment_incomplete", retryable=True),
            "payment_incomplete",
            NextAction.RETURN_TO_PLANS,
        ),
        (_failed("subscription_missing"), "subscription_missing", NextAction.CONTACT_SUPPORT),
        (
            httpx.Response(401, json={"detail": "Invalid or expired session"}),
            "unauthenticated",
            NextAction.SIGN_IN,
        ),
        (
            httpx.Response(500, json={"detail": {"reason": "persistence_failed"}}),
            "persistence_failed",
            NextAction.CONTACT_SUPPORT,
        ),
    ],
)
async def test_permanent_failures_map_to_next_actions(response, reason, action):
    server = ReconcileServer(response)
    orchestrator, sleeps = _orchestrator(server)

    view = await orchestrator.run(LANDING)

    assert view.state is CheckoutPhase.FAILED
    assert view.reason == reason
    assert view.next_action is action
    assert view.message
    assert len(server.requests) == 1
    assert sleeps == []
    with pytest.raises(RuntimeError):
        await orchestrator.retry()


@pytest.mark.asyncio
async def test_landing_without_session_fails_without_request():
    server = ReconcileServer(_entitled())
    orchestrator, _ = _orchestrator(server)

    view = await orchestrator.run("https://app.test/checkout/success")

    assert view.state is CheckoutPhase.FAILED
    assert view.reason == "session_not_found"
    assert view.next_action is NextAction.RETURN_TO_PLANS
    assert server.requests == []


@pytest.mark.asyncio
async def test_free_subscription_landing_is_entitled_immediately():
    server = ReconcileServer(_entitled())
    orchestrator, _ = _orchestrator(server)

    view = await orchestrator.run("https://app.test/dashboard?free_subscription=true")

    assert view.state is CheckoutPhase.ENTITLED
    assert view.next_action is NextAction.GO_TO_DASHBOARD
    assert server.requests == []


@pytest.mark.asyncio
async def test_each_session_is_reconciled_once():
    server = ReconcileServer(_entitled())
    orchestrator, _ = _orchestrator(server)

    first, second = await asyncio.gather(orchestrator.run(LANDING), orchestrator.run(LANDING))
    third = await orchestrator.run(LANDING)

    assert first == second == third
    assert len(server.requests) == 1


@pytest.mark.asyncio
async def test_progress_reports_processing_before_outcome():
    views = []
    server = ReconcileServer(_entitled())
    orchestrator, _ = _orchestrator(server, on_progress=views.append)

    await orchestrator.run(LANDING)

    assert [view.state for view in views] == [CheckoutPhase.PROCESSING, CheckoutPhase.ENTITLED]
    assert "session_id" not in views[0].clean_url
