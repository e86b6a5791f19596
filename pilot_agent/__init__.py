"""Core library for pilotchat -- credentials, catalog and conversation state.

Module Overview
---------------

**session_token.py**
    Exchanges a long-lived GitHub OAuth token for a short-lived Copilot
    session token bound to a dynamic API endpoint. Caches it with a 60s
    expiry buffer and renews it single-flight.

**model_catalog.py**
    Fetches ``{api}/models`` and normalizes both response shapes into
    sorted ``ModelDescriptor`` snapshots. Also parses plain OpenAI-style
    listings for API-key providers.

**conversation.py**
    The transcript state machine: one system message plus a reference-text
    block managed under a ``ReferenceTextPolicy``.

**chat_client.py**
    Chat completion calls through the OpenAI SDK, rebuilt per session.

**orchestrator.py**
    ``ChatTurnOrchestrator.send_turn()`` -- upserts, user message, remote
    call, assistant reply, serialized per conversation.

**errors.py**
    ``AuthError`` / ``CatalogError`` / ``TurnError`` / ``NetworkError`` with
    string codes, plus ``format_error()`` for user-facing guidance.

**http.py** / **async_bridge.py**
    httpx helpers and the sync-to-async entry point used by the CLI.

Architecture
------------

1. **Async I/O**: every network call is a coroutine so the device-flow poll,
   token exchange and chat calls never stall unrelated work.

2. **No CLI imports**: this package depends only on external packages and
   pilot_constants, never on pilot_cli.

3. **Typed failures**: errors carry a ``code`` instead of being matched on
   message text; timeouts have their own code.
"""
