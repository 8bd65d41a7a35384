"""Client for resolving bearer tokens against the Supabase auth API."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


class IdentityError(RuntimeError):
    """Base error for identity provider failures."""

    def __init__(self, message: str, code: str = "IDENTITY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class InvalidToken(IdentityError):
    """Raised when the identity provider rejects the access token."""

    def __init__(self, message: str = "Invalid or expired session") -> None:
        super().__init__(message, code="401_INVALID_TOKEN")


class IdentityUnavailable(IdentityError):
    """Raised when the identity provider cannot be reached or fails."""

    def __init__(self, message: str = "Identity provider unavailable") -> None:
        super().__init__(message, code="503_IDENTITY_UNAVAILABLE")


@dataclass(frozen=True)
class Identity:
    account_id: str
    email: str | None = None


class SupabaseIdentityClient:
    """Resolves an access token to the account it belongs to."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url or not anon_key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required for identity lookups")
        self._anon_key = anon_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def resolve(self, access_token: str) -> Identity:
        headers = {"apikey": self._anon_key, "Authorization": f"Bearer {access_token}"}
        try:
            response = await self._http.get("/auth/v1/user", headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("identity.request_failed", extra={"error": type(exc).__name__})
            raise IdentityUnavailable() from exc

        if response.status_code in (401, 403):
            raise InvalidToken()
        if response.status_code >= 400:
            logger.warning("identity.unexpected_status", extra={"status": response.status_code})
            raise IdentityUnavailable(f"Identity lookup failed: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise IdentityUnavailable("Identity response was not JSON") from exc
        account_id = payload.get("id") if isinstance(payload, dict) else None
        if not account_id:
            raise InvalidToken()
        return Identity(account_id=account_id, email=payload.get("email"))
