"""Uniform timeout wrapper for provider and store calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from app.services.billing.errors import BillingError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


async def with_timeout(
    awaitable: Awaitable[_T],
    *,
    seconds: float,
    operation: str,
    error: type[BillingError],
    shield: bool = False,
) -> _T:
    """Await ``awaitable`` for at most ``seconds``; raise ``error`` on expiry.

    With ``shield=True`` the underlying operation keeps running after a timeout
    or caller cancellation, so a write is never abandoned halfway.
    """
    target = asyncio.shield(awaitable) if shield else awaitable
    try:
        return await asyncio.wait_for(target, timeout=seconds)
    except TimeoutError as exc:
        logger.warning("timeout.expired", extra={"operation": operation, "seconds": seconds})
        raise error(f"{operation} timed out after {seconds:g}s") from exc
