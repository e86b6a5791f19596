"""Thin httpx helpers shared by the auth, session and catalog layers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from pilot_agent.errors import network_error_from
from pilot_constants import DEFAULT_HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


@asynccontextmanager
async def client_scope(
    client: Optional[httpx.AsyncClient],
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the caller's client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        headers={"Accept": "application/json"},
    ) as owned:
        yield owned


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    action: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request, converting transport failures to NetworkError."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        logger.debug("%s %s failed: %s", method, url, exc)
        raise network_error_from(exc, action) from exc
    logger.debug("%s %s -> %s", method, url, response.status_code)
    return response


def json_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Return the JSON object body, or None for non-JSON / non-object bodies."""
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def mask_token(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    if len(token) <= 12:
        return "***"
    return f"{token[:4]}...{token[-4:]}"
