"""Tests for pilot_agent/orchestrator.py with fake session provider and chat client."""

import asyncio
import time

import pytest

from pilot_agent.conversation import (
    ConversationHistory,
    ConversationOptions,
    ReferenceTextPolicy,
    Role,
)
from pilot_agent.errors import AuthError, TurnError
from pilot_agent.orchestrator import ChatTurnOrchestrator
from pilot_agent.session_token import SessionToken


class FakeSessionProvider:
    def __init__(self, error=None):
        self.error = error
        self.invalidations = 0
        self.session = SessionToken("sess", "https://api.test", int(time.time()) + 600)

    async def get_session(self):
        if self.error is not None:
            raise self.error
        return self.session

    def invalidate(self):
        self.invalidations += 1


class FakeChatClient:
    def __init__(self, replies=None, error=None, delay=0.0):
        self.replies = list(replies or ["ok"])
        self.error = error
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def complete(self, messages, *, model, session):
        self.calls.append({"messages": [dict(m) for m in messages], "model": model, "session": session})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.replies.pop(0) if self.replies else "ok"
        finally:
            self.active -= 1


def _orchestrator(chat_client=None, session_provider=None, policy=ReferenceTextPolicy.UPDATE_IN_PLACE, **options):
    history = ConversationHistory(
        ConversationOptions(reference_text_policy=policy, **options),
        lambda: "sys",
    )
    orchestrator = ChatTurnOrchestrator(history)
    orchestrator.configure(
        session_provider or FakeSessionProvider(),
        chat_client or FakeChatClient(),
        "gpt-4o",
    )
    return orchestrator


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_unconfigured_turn_fails_fast(self):
        orchestrator = ChatTurnOrchestrator()

        with pytest.raises(TurnError) as exc_info:
            await orchestrator.send_turn("hello")

        assert exc_info.value.code == TurnError.NOT_CONFIGURED
        assert len(orchestrator.history) == 0

    @pytest.mark.asyncio
    async def test_reset_unwires_provider(self):
        orchestrator = _orchestrator()
        orchestrator.reset()

        assert not orchestrator.is_configured
        with pytest.raises(TurnError):
            await orchestrator.send_turn("hello")

    def test_configure_starts_fresh_conversation(self):
        orchestrator = _orchestrator()
        orchestrator.history.add_user_message("stale")

        orchestrator.configure(FakeSessionProvider(), FakeChatClient(), "o3-mini")

        assert orchestrator.model == "o3-mini"
        assert [m.role for m in orchestrator.history.messages] == [Role.SYSTEM]


class TestSendTurn:
    @pytest.mark.asyncio
    async def test_successful_turn_builds_transcript(self):
        client = FakeChatClient(replies=["Hi there"])
        orchestrator = _orchestrator(client)

        reply = await orchestrator.send_turn("hello", "doc v1")

        assert reply == "Hi there"
        sent = client.calls[0]["messages"]
        assert sent == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "Reference Text:\n```\ndoc v1\n```\n\n"},
            {"role": "user", "content": "hello"},
        ]
        assert client.calls[0]["model"] == "gpt-4o"
        assert orchestrator.history.messages[-1].content == "Hi there"
        assert orchestrator.history.messages[-1].role is Role.ASSISTANT

    @pytest.mark.asyncio
    async def test_reference_text_updates_between_turns(self):
        client = FakeChatClient(replies=["a1", "a2"])
        orchestrator = _orchestrator(client)

        await orchestrator.send_turn("q1", "v1")
        await orchestrator.send_turn("q2", "v2")

        contents = [m["content"] for m in client.calls[1]["messages"]]
        assert contents == [
            "sys",
            "Reference Text:\n```\nv2\n```\n\n",
            "q1",
            "a1",
            "q2",
        ]

    @pytest.mark.asyncio
    async def test_reference_text_is_truncated(self):
        client = FakeChatClient()
        orchestrator = _orchestrator(client, max_reference_text_chars=3)

        await orchestrator.send_turn("q", "abcdef")

        assert client.calls[0]["messages"][1]["content"] == "Reference Text:\n```\nabc\n```\n\n"

    @pytest.mark.asyncio
    async def test_disabled_policy_sends_no_reference(self):
        client = FakeChatClient()
        orchestrator = _orchestrator(client, policy=ReferenceTextPolicy.DISABLED)

        await orchestrator.send_turn("q", "ignored")

        roles = [m["role"] for m in client.calls[0]["messages"]]
        assert roles == ["system", "user"]

    @pytest.mark.asyncio
    async def test_failed_call_keeps_user_message(self):
        client = FakeChatClient(error=TurnError("boom", code=TurnError.UPSTREAM, status=500))
        orchestrator = _orchestrator(client)

        with pytest.raises(TurnError):
            await orchestrator.send_turn("hello")

        last = orchestrator.history.messages[-1]
        assert last.role is Role.USER
        assert last.content == "hello"

    @pytest.mark.asyncio
    async def test_unauthorized_reply_invalidates_session(self):
        provider = FakeSessionProvider()
        client = FakeChatClient(error=TurnError("expired", code=TurnError.UPSTREAM, status=401))
        orchestrator = _orchestrator(client, provider)

        with pytest.raises(TurnError) as exc_info:
            await orchestrator.send_turn("hello")

        assert exc_info.value.status == 401
        assert provider.invalidations == 1

    @pytest.mark.asyncio
    async def test_other_failures_keep_session(self):
        provider = FakeSessionProvider()
        client = FakeChatClient(error=TurnError("down", code=TurnError.UPSTREAM, status=503))
        orchestrator = _orchestrator(client, provider)

        with pytest.raises(TurnError):
            await orchestrator.send_turn("hello")

        assert provider.invalidations == 0

    @pytest.mark.asyncio
    async def test_auth_failure_becomes_turn_error(self):
        provider = FakeSessionProvider(error=AuthError("denied", code=AuthError.ACCESS_DENIED, status=403))
        client = FakeChatClient()
        orchestrator = _orchestrator(client, provider)

        with pytest.raises(TurnError) as exc_info:
            await orchestrator.send_turn("hello")

        assert exc_info.value.code == TurnError.UPSTREAM
        assert exc_info.value.detail == AuthError.ACCESS_DENIED
        assert isinstance(exc_info.value.__cause__, AuthError)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_auth_timeout_keeps_timeout_code(self):
        provider = FakeSessionProvider(error=AuthError("slow", code=AuthError.TIMEOUT))
        orchestrator = _orchestrator(session_provider=provider)

        with pytest.raises(TurnError) as exc_info:
            await orchestrator.send_turn("hello")

        assert exc_info.value.code == TurnError.TIMEOUT

    @pytest.mark.asyncio
    async def test_turns_are_serialized(self):
        client = FakeChatClient(replies=["a1", "a2"], delay=0.02)
        orchestrator = _orchestrator(client)

        await asyncio.gather(
            orchestrator.send_turn("q1"),
            orchestrator.send_turn("q2"),
        )

        assert client.max_active == 1
        contents = [m.content for m in orchestrator.history.messages]
        assert contents == ["sys", "q1", "a1", "q2", "a2"]

    @pytest.mark.asyncio
    async def test_debug_hook_receives_transcript(self):
        seen = []
        orchestrator = _orchestrator(FakeChatClient(replies=["done"]))
        orchestrator.debug_hook = seen.append

        await orchestrator.send_turn("hello")

        assert "=== AI Chat History ===" in seen[0]
        assert seen[-1] == "[AI Response] done"

    @pytest.mark.asyncio
    async def test_clear_conversation(self):
        orchestrator = _orchestrator()
        await orchestrator.send_turn("hello", "ref")

        orchestrator.clear_conversation()

        assert [m.content for m in orchestrator.history.messages] == ["sys"]
