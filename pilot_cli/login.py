"""
GitHub OAuth device authorization flow and the `pilot login` / `pilot status` commands.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
import webbrowser
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from pilot_agent.async_bridge import run_async
from pilot_agent.errors import AuthError, NetworkError, PilotError, format_error
from pilot_agent.http import client_scope, json_body, mask_token, send
from pilot_agent.model_catalog import fetch_models
from pilot_agent.session_token import SessionTokenManager, parse_domain
from pilot_cli.config import load_config
from pilot_cli.token_store import TokenStore, discover_token, possible_token_locations
from pilot_constants import (
    COPILOT_CLIENT_ID,
    COPILOT_SCOPE,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEVICE_CODE_GRANT_TYPE,
    GITHUB_ACCESS_TOKEN_PATH,
    GITHUB_DEVICE_CODE_PATH,
    GITHUB_HOST,
)

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_CODE_EXPIRES_IN = 900
DEFAULT_POLL_INTERVAL_SECONDS = 5
SLOW_DOWN_INCREMENT_SECONDS = 5

ProgressCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class DeviceFlowState:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int = DEFAULT_DEVICE_CODE_EXPIRES_IN
    interval: int = DEFAULT_POLL_INTERVAL_SECONDS


def _coerce_seconds(value: Any, default: int) -> int:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default


def parse_device_code_response(payload: Optional[Dict[str, Any]]) -> DeviceFlowState:
    if not isinstance(payload, dict):
        raise AuthError("Device code response was not JSON.", code=AuthError.MALFORMED_RESPONSE)

    required_fields = ["device_code", "user_code", "verification_uri"]
    missing = [field for field in required_fields if not payload.get(field)]
    if missing:
        raise AuthError(
            f"Device code response missing fields: {', '.join(missing)}",
            code=AuthError.MALFORMED_RESPONSE,
        )

    return DeviceFlowState(
        device_code=str(payload["device_code"]),
        user_code=str(payload["user_code"]),
        verification_uri=str(payload["verification_uri"]),
        expires_in=_coerce_seconds(payload.get("expires_in"), DEFAULT_DEVICE_CODE_EXPIRES_IN),
        interval=_coerce_seconds(payload.get("interval"), DEFAULT_POLL_INTERVAL_SECONDS),
    )


class DeviceFlowAuthenticator:
    """Acquires a long-lived OAuth token via the GitHub device flow.

    Args:
        client: Optional shared ``httpx.AsyncClient``.
        github_host: GitHub host (``github.com`` or an enterprise URI).
        client_id: OAuth application id.
        scope: Requested OAuth scope.
        token_store: Where a successful token is persisted (best effort).
            Pass ``None`` to skip persistence.
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        github_host: Optional[str] = None,
        client_id: str = COPILOT_CLIENT_ID,
        scope: str = COPILOT_SCOPE,
        token_store: Optional[TokenStore] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        host = parse_domain(github_host) if github_host else GITHUB_HOST
        self._base_url = f"https://{host}"
        self._client = client
        self._client_id = client_id
        self._scope = scope
        self._token_store = token_store
        self._timeout = timeout
        self._sleep = sleep
        self._clock = clock

    @property
    def device_code_url(self) -> str:
        return f"{self._base_url}{GITHUB_DEVICE_CODE_PATH}"

    @property
    def access_token_url(self) -> str:
        return f"{self._base_url}{GITHUB_ACCESS_TOKEN_PATH}"

    async def authenticate(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Run the full device flow and return the OAuth token."""
        async with client_scope(self._client, timeout=self._timeout) as client:
            state = await self._request_device_code(client)
            if progress_callback is not None:
                progress_callback(state.user_code, state.verification_uri)
            token = await self._poll_for_token(client, state, cancel_event)

        if self._token_store is not None:
            saved_to = self._token_store.save(token)
            if saved_to is not None:
                logger.info("Saved OAuth token to %s", saved_to)
        return token

    async def _request_device_code(self, client: httpx.AsyncClient) -> DeviceFlowState:
        try:
            response = await send(
                client,
                "POST",
                self.device_code_url,
                action="device code request",
                data={"client_id": self._client_id, "scope": self._scope},
                headers={"Accept": "application/json"},
            )
        except NetworkError as exc:
            raise AuthError(str(exc), code=exc.code) from exc

        if response.status_code >= 400:
            raise AuthError(
                f"Failed to initiate device flow: HTTP {response.status_code}",
                code=AuthError.NETWORK,
                status=response.status_code,
            )
        return parse_device_code_response(json_body(response))

    async def _wait(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        if cancel_event.is_set():
            raise AuthError("Authentication was cancelled.", code=AuthError.CANCELLED)

        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        if cancel_event.is_set():
            raise AuthError("Authentication was cancelled.", code=AuthError.CANCELLED)

    async def _poll_for_token(
        self,
        client: httpx.AsyncClient,
        state: DeviceFlowState,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        deadline = self._clock() + state.expires_in
        interval = state.interval

        while self._clock() < deadline:
            await self._wait(interval, cancel_event)

            try:
                response = await send(
                    client,
                    "POST",
                    self.access_token_url,
                    action="device token poll",
                    data={
                        "client_id": self._client_id,
                        "device_code": state.device_code,
                        "grant_type": DEVICE_CODE_GRANT_TYPE,
                    },
                    headers={"Accept": "application/json"},
                )
            except NetworkError as exc:
                raise AuthError(str(exc), code=exc.code) from exc

            payload = json_body(response)
            if payload is None:
                raise AuthError(
                    f"Token endpoint returned a non-JSON response (HTTP {response.status_code})",
                    code=AuthError.MALFORMED_RESPONSE,
                    status=response.status_code,
                )

            access_token = payload.get("access_token")
            if isinstance(access_token, str) and access_token:
                logger.info("Device flow approved, received token %s", mask_token(access_token))
                return access_token

            error_code = str(payload.get("error") or "")
            if error_code == "authorization_pending":
                continue
            if error_code == "slow_down":
                interval += SLOW_DOWN_INCREMENT_SECONDS
                logger.debug("Device flow asked to slow down, polling every %ss", interval)
                continue
            if error_code == "expired_token":
                raise AuthError("Authentication timed out. Please try again.", code=AuthError.EXPIRED)
            if error_code == "access_denied":
                raise AuthError("Authentication was denied by the user.", code=AuthError.DENIED)

            description = payload.get("error_description") or error_code or "unknown error"
            raise AuthError(
                f"Authentication error: {description}",
                code=AuthError.OTHER,
                detail=error_code or None,
            )

        raise AuthError("Authentication timed out. Please try again.", code=AuthError.EXPIRED)


def get_auth_status() -> Dict[str, Any]:
    """Small status snapshot for `pilot status` output."""
    token = discover_token()
    return {
        "logged_in": bool(token),
        "token": mask_token(token),
        "locations": [
            {"path": str(path), "exists": path.exists()}
            for path in possible_token_locations()
        ],
    }


def _print_progress(open_browser: bool) -> ProgressCallback:
    def _progress(user_code: str, verification_uri: str) -> None:
        print()
        print("To continue:")
        print(f"1. Open: {verification_uri}")
        print(f"2. Enter code: {user_code}")
        if open_browser:
            if webbrowser.open(verification_uri):
                print("Opened browser for verification.")
            else:
                print("Could not automatically open browser; use the URL above.")
        print("Waiting for approval...")

    return _progress


@contextlib.contextmanager
def _cancel_on_sigint(cancel_event: asyncio.Event):
    """Turn Ctrl+C into a cooperative cancel of the running device flow."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError, ValueError):
        # Windows loops and worker threads: Ctrl+C stays a KeyboardInterrupt
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _login(args) -> str:
    config = load_config()
    enterprise_uri = getattr(args, "enterprise_uri", None) or config.get("enterprise_uri")
    timeout = float(getattr(args, "timeout", None) or config.get("timeout") or DEFAULT_HTTP_TIMEOUT_SECONDS)
    open_browser = not getattr(args, "no_browser", False)

    authenticator = DeviceFlowAuthenticator(
        github_host=enterprise_uri,
        token_store=TokenStore(),
        timeout=timeout,
    )
    cancel_event = asyncio.Event()
    with _cancel_on_sigint(cancel_event):
        token = await authenticator.authenticate(_print_progress(open_browser), cancel_event)
    print("Login successful.")

    if getattr(args, "list_models", True):
        try:
            manager = SessionTokenManager(enterprise_uri=enterprise_uri, timeout=timeout)
            session = await manager.ensure_valid_session(token)
            models = await fetch_models(session, timeout=timeout)
        except PilotError as exc:
            print()
            print(f"Login succeeded, but could not fetch available models. Reason: {format_error(exc)}")
        else:
            print()
            if models:
                print(f"Available models ({len(models)}):")
                for model in models:
                    print(f"  - {model.id}: {model.display_name}")
            else:
                print("No models are available in your subscription.")
    return token


def login_command(args) -> None:
    portal = getattr(args, "enterprise_uri", None) or GITHUB_HOST
    print("Starting pilot login via GitHub device authorization flow...")
    print(f"Host: {portal}")

    try:
        run_async(_login(args))
    except KeyboardInterrupt:
        print("Login cancelled.")
        raise SystemExit(130)
    except AuthError as exc:
        print(f"Login failed: {format_error(exc)}")
        raise SystemExit(130 if exc.code == AuthError.CANCELLED else 1)


def status_command(args) -> None:
    status = get_auth_status()
    print(f"Signed in: {'yes' if status['logged_in'] else 'no'}")
    if status["logged_in"]:
        print(f"Token: {status['token']}")
    print("Token locations:")
    for location in status["locations"]:
        marker = "✓" if location["exists"] else " "
        print(f"  {marker} {location['path']}")
