"""FastAPI dependency providers for the billing services built in the app lifespan."""

from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException, Request

from app.clients.identity import (
    Identity,
    IdentityUnavailable,
    InvalidToken,
    SupabaseIdentityClient,
)
from app.clients.stripe_gateway import StripeGateway
from app.config import Settings
from app.services.billing.access import AccessDecision, AccessGate, ReconciliationMarkers
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.billing.store import EntitlementStore

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> EntitlementStore:
    return request.app.state.store


def get_markers(request: Request) -> ReconciliationMarkers:
    return request.app.state.markers


def get_access_gate(request: Request) -> AccessGate:
    return request.app.state.access_gate


def get_gateway(request: Request) -> StripeGateway:
    gateway = request.app.state.gateway
    if gateway is None:
        logger.warning("billing.gateway.not_configured")
        raise HTTPException(status_code=503, detail="Payments are not configured")
    return gateway


def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    engine = request.app.state.reconciler
    if engine is None:
        logger.warning("billing.gateway.not_configured")
        raise HTTPException(status_code=503, detail="Payments are not configured")
    return engine


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


async def _resolve(request: Request, token: str) -> Identity:
    client: SupabaseIdentityClient | None = request.app.state.identity
    if client is None:
        raise HTTPException(status_code=503, detail="Identity provider not configured")
    try:
        return await client.resolve(token)
    except InvalidToken as exc:
        logger.warning("auth.session.invalid")
        raise HTTPException(status_code=401, detail="Invalid or expired session") from exc
    except IdentityUnavailable as exc:
        raise HTTPException(status_code=503, detail="Identity provider unavailable") from exc


async def require_identity(
    request: Request, authorization: str | None = Header(default=None)
) -> Identity:
    token = _bearer_token(authorization)
    if token is None:
        logger.warning("auth.session.missing_header")
        raise HTTPException(status_code=401, detail="Missing or invalid authorization")
    return await _resolve(request, token)


async def optional_identity(
    request: Request, authorization: str | None = Header(default=None)
) -> Identity | None:
    token = _bearer_token(authorization)
    if token is None:
        return None
    return await _resolve(request, token)


async def require_active_subscription(
    identity: Identity = Depends(require_identity),
    gate: AccessGate = Depends(get_access_gate),
) -> Identity:
    decision: AccessDecision = await gate.can_access(identity.account_id)
    if not decision.allowed:
        raise HTTPException(
            status_code=402,
            detail={"reason": decision.reason.value, "message": decision.message},
        )
    return identity
