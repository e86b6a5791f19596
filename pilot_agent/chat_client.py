"""Chat completion calls through the OpenAI SDK.

The Copilot API speaks the chat completions protocol at the endpoint handed
out with each session token, so the SDK client is rebuilt whenever the
session token (or its endpoint) changes.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Tuple

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from pilot_agent.errors import TurnError
from pilot_agent.session_token import SessionToken
from pilot_constants import COPILOT_HEADERS, DEFAULT_HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response from AI."


class ChatCompletionClient:
    """Sends a full transcript and returns the assistant reply text.

    Args:
        headers: Extra headers sent on every request (Copilot needs its fixed set).
        timeout: Request timeout in seconds.
        http_client: Optional ``httpx.AsyncClient`` handed to the SDK (proxies, tests).
    """

    def __init__(
        self,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS * 4,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._headers = dict(COPILOT_HEADERS if headers is None else headers)
        self._timeout = timeout
        self._http_client = http_client
        self._client: Optional[AsyncOpenAI] = None
        self._client_key: Optional[Tuple[str, str]] = None

    async def _client_for(self, session: SessionToken) -> AsyncOpenAI:
        key = (session.token, session.api_endpoint)
        if self._client is None or self._client_key != key:
            # the shared http_client outlives any one SDK client
            if self._client is not None and self._http_client is None:
                await self._client.close()
            client_kwargs = {
                "api_key": session.token or "not-needed",
                "base_url": session.api_endpoint,
                "default_headers": self._headers,
                "timeout": self._timeout,
                # failures are reported once, never retried behind the caller's back
                "max_retries": 0,
            }
            if self._http_client is not None:
                client_kwargs["http_client"] = self._http_client
            self._client = AsyncOpenAI(**client_kwargs)
            self._client_key = key
            logger.debug("Built chat client for %s", session.api_endpoint)
        return self._client

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        session: SessionToken,
    ) -> str:
        client = await self._client_for(session)
        try:
            response = await client.chat.completions.create(model=model, messages=messages)
        except APITimeoutError as exc:
            raise TurnError(
                "The AI request timed out. Please retry.",
                code=TurnError.TIMEOUT,
            ) from exc
        except APIConnectionError as exc:
            raise TurnError(
                f"Could not reach the AI endpoint: {exc}",
                code=TurnError.NETWORK,
            ) from exc
        except APIStatusError as exc:
            raise TurnError(
                f"AI request failed ({exc.status_code}): {exc.message}",
                code=TurnError.UPSTREAM,
                status=exc.status_code,
            ) from exc
        except OpenAIError as exc:
            raise TurnError(
                f"AI request failed: {exc}",
                code=TurnError.UPSTREAM,
            ) from exc

        # non-JSON bodies (proxy or captive-portal pages) come back as plain text
        choices = getattr(response, "choices", None)
        if choices is None:
            logger.warning("Chat endpoint returned an unexpected body: %.200r", response)
            raise TurnError(
                "The AI endpoint returned an unreadable response.",
                code=TurnError.UPSTREAM,
            )
        if not choices:
            return NO_RESPONSE_TEXT
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if content else NO_RESPONSE_TEXT

    async def aclose(self) -> None:
        if self._client is not None and self._http_client is None:
            await self._client.close()
        self._client = None
        self._client_key = None
