"""Short-lived Copilot session tokens.

A long-lived OAuth token (from the device flow or an IDE config file) is
exchanged at ``/copilot_internal/v2/token`` for a session token that is only
valid for minutes and is bound to a dynamic API endpoint. The OAuth token is
presented with the ``token`` scheme, the session token with ``Bearer``; the
two are not interchangeable.

Renewal is single-flight: concurrent callers that find no valid session all
await the same exchange request. The in-flight handle is released by the
exchange task itself once the request has finished, so a failed exchange
never leaves later callers waiting.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import httpx

from pilot_agent.errors import AuthError, NetworkError
from pilot_agent.http import client_scope, json_body, mask_token, send
from pilot_constants import (
    COPILOT_HEADERS,
    COPILOT_TOKEN_EXCHANGE_PATH,
    COPILOT_TOKEN_EXCHANGE_URL,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    SESSION_EXPIRY_BUFFER_SECONDS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionToken:
    token: str
    api_endpoint: str
    expires_at: int

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at - SESSION_EXPIRY_BUFFER_SECONDS

    @property
    def remaining_seconds(self) -> int:
        return max(0, int(self.expires_at - time.time()))

    @property
    def models_url(self) -> str:
        return f"{self.api_endpoint}/models"

    @property
    def chat_completions_url(self) -> str:
        return f"{self.api_endpoint}/chat/completions"

    @property
    def responses_url(self) -> str:
        return f"{self.api_endpoint}/responses"


def parse_domain(uri: str) -> str:
    """Return the host part of an enterprise URI (scheme and path dropped)."""
    text = uri.strip().rstrip("/")
    if "://" not in text:
        text = f"https://{text}"
    return urlsplit(text).netloc


def token_exchange_url(enterprise_uri: Optional[str] = None) -> str:
    if not enterprise_uri or not enterprise_uri.strip():
        return COPILOT_TOKEN_EXCHANGE_URL
    return f"https://api.{parse_domain(enterprise_uri)}{COPILOT_TOKEN_EXCHANGE_PATH}"


def parse_session_token(payload: Optional[Dict[str, Any]]) -> SessionToken:
    if not isinstance(payload, dict):
        raise AuthError(
            "Token exchange returned an unreadable response.",
            code=AuthError.MALFORMED_RESPONSE,
        )

    token = payload.get("token")
    endpoints = payload.get("endpoints")
    api = endpoints.get("api") if isinstance(endpoints, dict) else None
    if not isinstance(token, str) or not token or not isinstance(api, str) or not api:
        raise AuthError(
            "Token exchange response missing required fields.",
            code=AuthError.MALFORMED_RESPONSE,
        )

    try:
        expires_at = int(payload.get("expires_at") or 0)
    except (TypeError, ValueError):
        expires_at = 0

    return SessionToken(token=token, api_endpoint=api.rstrip("/"), expires_at=expires_at)


class SessionTokenManager:
    """Caches the current session token and renews it on expiry.

    Args:
        client: Optional shared ``httpx.AsyncClient``. When omitted a client is
            created per exchange.
        enterprise_uri: GitHub Enterprise base URI, e.g. ``https://github.acme.com``.
        headers: Fixed outbound headers; defaults to the Copilot header set.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        enterprise_uri: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._client = client
        self._exchange_url = token_exchange_url(enterprise_uri)
        self._headers = dict(COPILOT_HEADERS if headers is None else headers)
        self._timeout = timeout
        self._session: Optional[SessionToken] = None
        self._session_owner: Optional[str] = None
        self._generation = 0
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def session(self) -> Optional[SessionToken]:
        return self._session

    @property
    def exchange_url(self) -> str:
        return self._exchange_url

    def invalidate(self) -> None:
        """Drop the cached session; the next call performs a fresh exchange.

        Exchanges already in flight still resolve for their own callers but
        no longer write into the cache.
        """
        if self._session is not None:
            logger.debug("Discarding cached Copilot session token")
        self._session = None
        self._session_owner = None
        self._generation += 1
        self._inflight.clear()

    async def ensure_valid_session(
        self,
        oauth_token: str,
        cached: Optional[SessionToken] = None,
    ) -> SessionToken:
        """Return a non-expired session token, exchanging only when needed.

        ``cached`` defaults to the manager's own cache, which only counts when
        it was obtained for ``oauth_token``. A valid cached token is returned
        unchanged without any network traffic.
        """
        current = cached
        if current is None and self._session_owner == oauth_token:
            current = self._session
        if current is not None and not current.is_expired:
            return current

        if not oauth_token:
            raise AuthError(
                "No OAuth token provided. Run `pilot login` or enable token auto-discovery.",
                code=AuthError.NOT_SIGNED_IN,
            )

        task = self._inflight.get(oauth_token)
        if task is None:
            task = asyncio.ensure_future(self._run_exchange(oauth_token))
            self._inflight[oauth_token] = task
        else:
            logger.debug("Joining in-flight Copilot token exchange")

        # shield: one caller being cancelled must not cancel the shared exchange
        return await asyncio.shield(task)

    async def _run_exchange(self, oauth_token: str) -> SessionToken:
        generation = self._generation
        task = asyncio.current_task()
        try:
            session = await self.exchange(oauth_token)
        except AuthError:
            if generation == self._generation:
                self._session = None
                self._session_owner = None
            raise
        else:
            if generation == self._generation:
                self._session = session
                self._session_owner = oauth_token
            else:
                logger.debug("Discarding session from an exchange started before invalidation")
            return session
        finally:
            if self._inflight.get(oauth_token) is task:
                del self._inflight[oauth_token]

    async def exchange(self, oauth_token: str) -> SessionToken:
        """Perform one token exchange call (no caching, no single-flight)."""
        headers = {
            **self._headers,
            "Accept": "application/json",
            "Authorization": f"token {oauth_token}",
        }
        logger.debug("Exchanging OAuth token %s at %s", mask_token(oauth_token), self._exchange_url)

        async with client_scope(self._client, timeout=self._timeout) as client:
            try:
                response = await send(
                    client, "GET", self._exchange_url, action="token exchange", headers=headers,
                )
            except NetworkError as exc:
                raise AuthError(str(exc), code=exc.code) from exc

        if response.status_code == 401:
            raise AuthError(
                "OAuth token is invalid or expired. Please re-authenticate.",
                code=AuthError.INVALID_OR_EXPIRED,
                status=401,
            )
        if response.status_code == 403:
            raise AuthError(
                "Access denied. Your GitHub account may not have Copilot access.",
                code=AuthError.ACCESS_DENIED,
                status=403,
            )
        if response.status_code >= 400:
            raise AuthError(
                f"Token exchange failed ({response.status_code}): {response.text[:200]}",
                code=AuthError.OTHER,
                status=response.status_code,
            )

        session = parse_session_token(json_body(response))
        logger.info(
            "Obtained Copilot session token for %s (expires in %ss)",
            session.api_endpoint,
            session.remaining_seconds,
        )
        return session


class CopilotSessionProvider:
    """Binds a long-lived OAuth token to a SessionTokenManager."""

    def __init__(self, manager: SessionTokenManager, oauth_token: Optional[str] = None):
        self._manager = manager
        self._oauth_token = oauth_token or ""

    @property
    def oauth_token(self) -> str:
        return self._oauth_token

    @property
    def manager(self) -> SessionTokenManager:
        return self._manager

    def set_oauth_token(self, oauth_token: Optional[str]) -> None:
        token = oauth_token or ""
        if token != self._oauth_token:
            self._oauth_token = token
            self._manager.invalidate()

    def invalidate(self) -> None:
        self._manager.invalidate()

    async def get_session(self) -> SessionToken:
        return await self._manager.ensure_valid_session(self._oauth_token)


class StaticSessionProvider:
    """Session provider for API-key providers whose credentials never expire."""

    def __init__(self, api_key: str, base_url: str):
        self._session = SessionToken(
            token=api_key or "",
            api_endpoint=base_url.rstrip("/"),
            expires_at=sys.maxsize,
        )

    def invalidate(self) -> None:
        pass

    async def get_session(self) -> SessionToken:
        return self._session
