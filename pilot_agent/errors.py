"""Error taxonomy shared by the auth, catalog and chat layers.

Every error carries a short string ``code`` so CLI surfaces can map failures
to guidance without string matching on messages.
"""

from __future__ import annotations

from typing import Optional

import httpx


class PilotError(RuntimeError):
    """Base error with a machine-readable code."""

    default_code = "other"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.status = status
        self.detail = detail

    @property
    def is_timeout(self) -> bool:
        return self.code == "timeout"


class NetworkError(PilotError):
    """Server unreachable or request timed out."""

    default_code = "network"


class AuthError(PilotError):
    """Device flow or token exchange failure."""

    INVALID_OR_EXPIRED = "invalid_or_expired"
    ACCESS_DENIED = "access_denied"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    MALFORMED_RESPONSE = "malformed_response"
    NOT_SIGNED_IN = "not_signed_in"
    NETWORK = "network"
    TIMEOUT = "timeout"
    OTHER = "other"

    @property
    def relogin_required(self) -> bool:
        return self.code in {self.INVALID_OR_EXPIRED, self.NOT_SIGNED_IN, self.EXPIRED}


class CatalogError(PilotError):
    """Model catalog could not be fetched or parsed."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    HTTP_ERROR = "http_error"

    default_code = "network"


class TurnError(PilotError):
    """A chat turn could not be completed."""

    NOT_CONFIGURED = "not_configured"
    UPSTREAM = "upstream"
    NETWORK = "network"
    TIMEOUT = "timeout"

    default_code = "upstream"


def network_error_from(exc: httpx.HTTPError, action: str) -> NetworkError:
    """Wrap an httpx transport failure, keeping timeouts distinct."""
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"{action} timed out. Please retry.", code="timeout")
    return NetworkError(f"Network error during {action}: {exc}", code="network")


def format_error(error: Exception) -> str:
    """Map low-level failures to concise user-facing guidance."""
    if not isinstance(error, PilotError):
        return str(error)

    if error.is_timeout:
        return f"{error} If this keeps happening, check your network connection."

    if isinstance(error, AuthError):
        if error.code == AuthError.CANCELLED:
            return "Sign-in was cancelled."
        if error.code == AuthError.ACCESS_DENIED:
            return f"{error} Check that your GitHub account has an active Copilot subscription."
        if error.relogin_required:
            return f"{error} Run `pilot login` to re-authenticate."

    if isinstance(error, TurnError) and error.code == TurnError.NOT_CONFIGURED:
        return f"{error} Run `pilot login` or set a provider in config.yaml."

    if error.code == "network":
        return f"{error} Check your internet connection."

    return str(error)
