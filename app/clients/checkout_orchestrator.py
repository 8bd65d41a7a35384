"""Client for the post-checkout landing flow.

Given the URL the payment provider redirected the browser to, the orchestrator
calls the reconciliation endpoint once per checkout session, retries transient
failures with backoff, and reduces the outcome to a view with a single next
action for the user.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from app.core.backoff import exponential_backoff

logger = logging.getLogger(__name__)

SESSION_PARAM = "session_id"
FREE_SUBSCRIPTION_PARAM = "free_subscription"


class CheckoutPhase(StrEnum):
    PROCESSING = "processing"
    ENTITLED = "entitled"
    FAILED = "failed"


class NextAction(StrEnum):
    GO_TO_DASHBOARD = "go_to_dashboard"
    TRY_AGAIN = "try_again"
    RETURN_TO_PLANS = "return_to_plans"
    CONTACT_SUPPORT = "contact_support"
    SIGN_IN = "sign_in"


_ACTIONS = {
    "payment_incomplete": NextAction.RETURN_TO_PLANS,
    "provider_unavailable": NextAction.TRY_AGAIN,
    "subscription_not_active": NextAction.RETURN_TO_PLANS,
    "session_not_found": NextAction.RETURN_TO_PLANS,
    "invalid_plan": NextAction.RETURN_TO_PLANS,
    "subscription_missing": NextAction.CONTACT_SUPPORT,
    "persistence_failed": NextAction.CONTACT_SUPPORT,
    "unauthenticated": NextAction.SIGN_IN,
}

_MESSAGES = {
    "entitled": "Your subscription is active. Taking you to your dashboard.",
    "processing": "We're activating your subscription. This will only take a moment...",
    "payment_incomplete": "Your payment has not completed. Please choose a plan and try again.",
    "provider_unavailable": (
        "We could not reach the payment provider. Please try again in a moment."
    ),
    "subscription_not_active": "Your subscription is not active. Please choose a plan again.",
    "session_not_found": "Invalid checkout session. Please try again.",
    "invalid_plan": "That plan is no longer available. Please choose a plan again.",
    "subscription_missing": (
        "We could not find a subscription for this payment. Please contact support."
    ),
    "persistence_failed": (
        "Your payment went through but we could not activate your subscription. "
        "Please contact support."
    ),
    "unauthenticated": "Your session has expired. Please sign in again.",
}

_TRANSIENT_REASONS = frozenset({"provider_unavailable"})


@dataclass(frozen=True)
class CheckoutView:
    state: CheckoutPhase
    message: str
    clean_url: str
    reason: str | None = None
    next_action: NextAction | None = None
    attempts: int = 0
    plan_type: str | None = None

    @property
    def transient(self) -> bool:
        return self.state is CheckoutPhase.FAILED and self.reason in _TRANSIENT_REASONS


def strip_session_param(url: str) -> str:
    """Remove the checkout session reference from a landing URL."""
    parts = urlsplit(url)
    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key != SESSION_PARAM
    ]
    return urlunsplit(parts._replace(query=urlencode(kept)))


def _failed(reason: str, clean_url: str, attempts: int) -> CheckoutView:
    return CheckoutView(
        state=CheckoutPhase.FAILED,
        message=_MESSAGES.get(reason, _MESSAGES["provider_unavailable"]),
        clean_url=clean_url,
        reason=reason,
        next_action=_ACTIONS.get(reason, NextAction.CONTACT_SUPPORT),
        attempts=attempts,
    )


class CheckoutOrchestrator:
    """Drives reconciliation for one signed-in account from the landing URL."""

    def __init__(
        self,
        base_url: str,
        *,
        account_id: str,
        access_token: str,
        on_progress: Callable[[CheckoutView], None] | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._account_id = account_id
        self._access_token = access_token
        self._on_progress = on_progress
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )
        self._runs: dict[str, asyncio.Task[CheckoutView]] = {}
        self._last: tuple[str, str] | None = None
        self._last_view: CheckoutView | None = None

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    @property
    def can_retry(self) -> bool:
        return self._last_view is not None and self._last_view.next_action is NextAction.TRY_AGAIN

    async def run(self, landing_url: str) -> CheckoutView:
        """Reconcile the checkout referenced by ``landing_url``.

        Repeated calls for the same session share the first run's result
        instead of reconciling again.
        """
        clean_url = strip_session_param(landing_url)
        params = dict(parse_qsl(urlsplit(landing_url).query))
        session_ref = params.get(SESSION_PARAM)
        if not session_ref:
            if params.get(FREE_SUBSCRIPTION_PARAM) == "true":
                view = CheckoutView(
                    state=CheckoutPhase.ENTITLED,
                    message=_MESSAGES["entitled"],
                    clean_url=clean_url,
                    next_action=NextAction.GO_TO_DASHBOARD,
                )
            else:
                view = _failed("session_not_found", clean_url, attempts=0)
            self._last_view = view
            self._emit(view)
            return view

        task = self._runs.get(session_ref)
        if task is None:
            task = asyncio.ensure_future(self._reconcile(session_ref, clean_url))
            self._runs[session_ref] = task
            self._last = (session_ref, clean_url)
        try:
            return await task
        except asyncio.CancelledError:
            self._runs.pop(session_ref, None)
            raise

    async def retry(self) -> CheckoutView:
        """Run a fresh reconciliation after a transient failure exhausted its retries."""
        if not self.can_retry or self._last is None:
            raise RuntimeError("retry is only available after a transient failure")
        session_ref, clean_url = self._last
        task = asyncio.ensure_future(self._reconcile(session_ref, clean_url))
        self._runs[session_ref] = task
        return await task

    async def _reconcile(self, session_ref: str, clean_url: str) -> CheckoutView:
        view = CheckoutView(
            state=CheckoutPhase.PROCESSING, message=_MESSAGES["processing"], clean_url=clean_url
        )
        schedule: Iterator[tuple[int, float]] = exponential_backoff(
            max_attempts=self._max_attempts, base_delay=self._base_delay
        )
        for attempt, delay in schedule:
            self._emit(replace(view, attempts=attempt))
            view = await self._attempt(session_ref, clean_url, attempt)
            if not view.transient or attempt >= self._max_attempts:
                break
            logger.info(
                "checkout.orchestrator.retrying",
                extra={"session_ref": session_ref, "attempt": attempt, "delay": delay},
            )
            await self._sleep(delay)
        self._last_view = view
        self._emit(view)
        return view

    async def _attempt(self, session_ref: str, clean_url: str, attempt: int) -> CheckoutView:
        try:
            response = await self._http.post(
                "/billing/checkout/reconcile",
                json={"session_ref": session_ref, "account_id": self._account_id},
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "checkout.orchestrator.request_failed",
                extra={"session_ref": session_ref, "error": type(exc).__name__},
            )
            return _failed("provider_unavailable", clean_url, attempt)

        payload = _json(response)
        if response.status_code in (401, 403):
            return _failed("unauthenticated", clean_url, attempt)
        if response.status_code >= 500:
            reason = _reason(payload) or "provider_unavailable"
            return _failed(reason, clean_url, attempt)
        if response.status_code >= 400 or payload is None:
            return _failed(_reason(payload) or "session_not_found", clean_url, attempt)
        if payload.get("success"):
            return CheckoutView(
                state=CheckoutPhase.ENTITLED,
                message=_MESSAGES["entitled"],
                clean_url=clean_url,
                next_action=NextAction.GO_TO_DASHBOARD,
                attempts=attempt,
                plan_type=payload.get("plan_type"),
            )
        return _failed(payload.get("reason") or "subscription_missing", clean_url, attempt)

    def _emit(self, view: CheckoutView) -> None:
        if self._on_progress is not None:
            self._on_progress(view)


def _json(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _reason(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    detail = payload.get("detail")
    if isinstance(detail, dict):
        return detail.get("reason")
    return payload.get("reason")
