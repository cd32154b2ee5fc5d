from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from return_mailer.domain.errors import AuthError
from return_mailer.observability import incr_metric, log_event


_DEFAULT_TTL_SECONDS = 300
_AUTHORIZE_SCOPE = "offline_access"


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float
    expires_in: int | None = None
    token_type: str | None = None


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200]


class TokenBroker:
    """Trades the stored refresh token for short-lived carrier access tokens.

    Tokens are cached until ``refresh_margin_seconds`` before the expiry the
    token endpoint reports. Concurrent callers that find the cache cold share
    one refresh call.
    """

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        body_encoding: str = "json",
        timeout_seconds: float = 15.0,
        refresh_margin_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._body_encoding = body_encoding
        self._timeout_seconds = timeout_seconds
        self._refresh_margin_seconds = refresh_margin_seconds
        self._transport = transport
        self._clock = clock
        self._cached: AccessToken | None = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> AccessToken | None:
        cached = self._cached
        if cached and cached.expires_at - self._refresh_margin_seconds > self._clock():
            return cached
        return None

    async def get_access_token(self) -> str:
        token = self._fresh()
        if token:
            return token.value
        async with self._lock:
            token = self._fresh()
            if token:
                return token.value
            token = await self.refresh()
            self._cached = token
            return token.value

    def invalidate(self) -> None:
        self._cached = None

    async def refresh(self) -> AccessToken:
        """Run one refresh-grant exchange, bypassing the cache."""
        body = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": self._refresh_token,
        }
        request_kwargs: dict[str, Any] = {"json": body} if self._body_encoding == "json" else {"data": body}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(self._token_url, headers={"Accept": "application/json"}, **request_kwargs)
        except httpx.HTTPError as exc:
            incr_metric("sera.token.refresh_failed", kind=AuthError.TOKEN_ENDPOINT_UNREACHABLE)
            raise AuthError(
                f"Token refresh failed: {exc.__class__.__name__}",
                kind=AuthError.TOKEN_ENDPOINT_UNREACHABLE,
            ) from exc

        if response.status_code >= 400:
            incr_metric("sera.token.refresh_failed", kind=AuthError.INVALID_CREDENTIALS)
            log_event(
                "sera_token_refresh_rejected",
                level=logging.WARNING,
                status_code=response.status_code,
            )
            raise AuthError(
                f"Token refresh failed. HTTP {response.status_code}",
                kind=AuthError.INVALID_CREDENTIALS,
                http_status=response.status_code,
                details=_error_body(response),
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise AuthError(
                "Token endpoint returned non-JSON response",
                kind=AuthError.MALFORMED_RESPONSE,
                http_status=response.status_code,
            ) from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError(
                "Token endpoint response has no access_token",
                kind=AuthError.MALFORMED_RESPONSE,
                http_status=response.status_code,
            )

        expires_in = data.get("expires_in")
        try:
            ttl = int(expires_in) if expires_in is not None else _DEFAULT_TTL_SECONDS
        except (TypeError, ValueError):
            ttl = _DEFAULT_TTL_SECONDS
        incr_metric("sera.token.refreshed")
        log_event("sera_token_refreshed", expires_in=ttl)
        return AccessToken(
            value=str(data["access_token"]),
            expires_at=self._clock() + ttl,
            expires_in=ttl,
            token_type=data.get("token_type"),
        )


def build_authorize_url(*, signin_url: str, client_id: str, redirect_uri: str) -> str:
    query = urlencode(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": _AUTHORIZE_SCOPE,
        }
    )
    return f"{signin_url.rstrip('/')}/authorize?{query}"


async def exchange_authorization_code(
    *,
    token_url: str,
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str,
    timeout_seconds: float = 15.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """One-time provisioning exchange; the client authenticates with a Basic header."""
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    }
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds, transport=transport) as client:
            response = await client.post(
                token_url,
                data=form,
                auth=(client_id, client_secret),
                headers={"Accept": "application/json"},
            )
    except httpx.HTTPError as exc:
        raise AuthError(
            f"Token exchange failed: {exc.__class__.__name__}",
            kind=AuthError.TOKEN_ENDPOINT_UNREACHABLE,
        ) from exc

    data = _error_body(response)
    if response.status_code >= 400:
        raise AuthError(
            f"Token exchange failed. HTTP {response.status_code}",
            kind=AuthError.INVALID_CREDENTIALS,
            http_status=response.status_code,
            details=data,
        )
    if not isinstance(data, dict) or not data.get("refresh_token"):
        raise AuthError(
            "Token exchange succeeded but no refresh_token was returned",
            kind=AuthError.MALFORMED_RESPONSE,
            http_status=response.status_code,
            details=data if isinstance(data, dict) else None,
        )
    return data
