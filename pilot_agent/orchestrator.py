"""One chat turn: system prompt, reference text, user message, reply.

Turns on the same conversation are serialized with an ``asyncio.Lock``; the
history upserts and the append-on-reply are not atomic against interleaving.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from pilot_agent.chat_client import ChatCompletionClient
from pilot_agent.conversation import ConversationHistory
from pilot_agent.errors import AuthError, TurnError
from pilot_agent.session_token import SessionToken

logger = logging.getLogger(__name__)


class SessionProvider(Protocol):
    async def get_session(self) -> SessionToken: ...

    def invalidate(self) -> None: ...


def _turn_error_from_auth(exc: AuthError) -> TurnError:
    if exc.is_timeout:
        code = TurnError.TIMEOUT
    elif exc.code == AuthError.NETWORK:
        code = TurnError.NETWORK
    else:
        code = TurnError.UPSTREAM
    return TurnError(str(exc), code=code, status=exc.status, detail=exc.code)


class ChatTurnOrchestrator:
    """Composes and sends chat turns against a conversation history.

    Args:
        history: Conversation to append to; a fresh one is created if omitted.
        session_provider: Object with ``get_session()`` / ``invalidate()``.
        chat_client: Sends the transcript and returns the reply text.
        model: Model id passed to the chat completion call.
    """

    def __init__(
        self,
        history: Optional[ConversationHistory] = None,
        *,
        session_provider: Optional[SessionProvider] = None,
        chat_client: Optional[ChatCompletionClient] = None,
        model: Optional[str] = None,
    ):
        self.history = history or ConversationHistory()
        self._session_provider = session_provider
        self._chat_client = chat_client
        self._model = model
        self._lock = asyncio.Lock()
        self.debug_hook: Optional[Callable[[str], None]] = None

    @property
    def is_configured(self) -> bool:
        return self._session_provider is not None and self._chat_client is not None

    @property
    def model(self) -> Optional[str]:
        return self._model

    def configure(
        self,
        session_provider: SessionProvider,
        chat_client: ChatCompletionClient,
        model: str,
    ) -> None:
        """Wire a provider and start a fresh conversation."""
        self._session_provider = session_provider
        self._chat_client = chat_client
        self._model = model
        self.history.clear()
        logger.info("Chat configured for model %s", model)

    def reset(self) -> None:
        self._session_provider = None
        self._chat_client = None
        self._model = None

    def clear_conversation(self) -> None:
        self.history.clear()

    async def aclose(self) -> None:
        if self._chat_client is not None:
            await self._chat_client.aclose()

    def _debug(self, text: str) -> None:
        if self.debug_hook is not None:
            self.debug_hook(text)

    async def send_turn(self, user_text: str, reference_text: str = "") -> str:
        """Send one user turn and return the assistant reply.

        The user message stays in the history when the call fails so the
        caller can retry or edit.
        """
        if not self.is_configured:
            raise TurnError(
                "AI service not configured. Please sign in and pick a model first.",
                code=TurnError.NOT_CONFIGURED,
            )

        async with self._lock:
            history = self.history
            history.set_system_prompt_if_changed()
            history.set_reference_text_if_changed(
                history.options.truncate_reference_text(reference_text or "")
            )
            history.add_user_message(user_text)

            try:
                session = await self._session_provider.get_session()
            except AuthError as exc:
                raise _turn_error_from_auth(exc) from exc

            self._debug(history.dump())
            try:
                reply = await self._chat_client.complete(
                    history.to_dicts(), model=self._model or "", session=session,
                )
            except TurnError as exc:
                if exc.status == 401:
                    self._session_provider.invalidate()
                logger.warning("Chat turn failed: %s", exc)
                raise

            self._debug(f"[AI Response] {reply}")
            history.add_assistant_message(reply)
            return reply
