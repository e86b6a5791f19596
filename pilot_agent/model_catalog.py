"""Model catalog fetching and normalization.

Copilot's ``/models`` endpoint has returned both a bare JSON array and an
object wrapping the array in ``data``; both shapes are accepted. Entries are
parsed individually so one malformed model never hides the rest.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from pilot_agent.errors import CatalogError, NetworkError
from pilot_agent.http import client_scope, send
from pilot_agent.session_token import SessionToken
from pilot_constants import COPILOT_HEADERS, DEFAULT_HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_NAME_TAGS_RE = re.compile(r"\(preview\)|\(beta\)|preview|beta", re.IGNORECASE)


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    description: Optional[str] = None
    vendor: Optional[str] = None
    family: Optional[str] = None
    token_multiplier: Optional[float] = None
    max_input_tokens: Optional[int] = None
    max_output_tokens: Optional[int] = None
    is_preview: bool = False
    is_beta: bool = False
    is_premium: bool = False
    created: Optional[int] = None
    owned_by: Optional[str] = None

    @property
    def is_beta_or_preview(self) -> bool:
        return self.is_beta or self.is_preview

    @property
    def display_name(self) -> str:
        tags: List[str] = []
        # Token multiplier first, it is the "cost"
        if self.token_multiplier is not None:
            if self.token_multiplier == 0:
                tags.append("free")
            elif self.token_multiplier == 1.0:
                tags.append("1x")
            else:
                tags.append(f"{self.token_multiplier:g}x")
        if self.is_beta:
            tags.append("Beta")
        elif self.is_preview:
            tags.append("Preview")
        if not tags:
            return self.name
        return f"{self.name} [{', '.join(tags)}]"

    @property
    def tooltip(self) -> str:
        lines = [f"ID: {self.id}"]
        if self.vendor:
            lines.append(f"Vendor: {self.vendor}")
        if self.owned_by:
            lines.append(f"Owned by: {self.owned_by}")
        if self.family:
            lines.append(f"Family: {self.family}")
        if self.token_multiplier is not None:
            lines.append(f"Token Rate: {self.token_multiplier:g}x")
        if self.max_input_tokens is not None:
            lines.append(f"Max Input: {self.max_input_tokens:,} tokens")
        if self.max_output_tokens is not None:
            lines.append(f"Max Output: {self.max_output_tokens:,} tokens")
        if self.created is not None:
            created = datetime.fromtimestamp(self.created, tz=timezone.utc)
            lines.append(f"Created: {created:%Y-%m-%d}")
        if self.is_beta:
            lines.append("Beta - may be unstable")
        elif self.is_preview:
            lines.append("Preview - subject to change")
        if self.description:
            lines.append("")
            lines.append(self.description)
        return "\n".join(lines)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def clean_model_name(name: str) -> str:
    """Strip preview/beta markers from a display name and collapse spaces."""
    return _NAME_TAGS_RE.sub("", name).strip().replace("  ", " ")


def parse_model_entry(entry: Mapping[str, Any]) -> Optional[ModelDescriptor]:
    """Parse one catalog entry; returns None for entries that must be hidden."""
    model_id = entry.get("id")
    if not isinstance(model_id, str) or not model_id:
        return None

    policy = entry.get("policy")
    if isinstance(policy, dict) and "state" in policy:
        state = policy["state"]
        if state is not None and state != "enabled":
            return None

    picker = entry.get("model_picker_enabled")
    if isinstance(picker, bool) and not picker:
        return None

    raw_name = entry.get("name")
    name = raw_name if isinstance(raw_name, str) and raw_name else model_id

    multiplier: Optional[float] = None
    is_premium = False
    billing = entry.get("billing")
    if isinstance(billing, dict):
        if _is_number(billing.get("multiplier")):
            multiplier = float(billing["multiplier"])
        if "is_premium" in billing:
            is_premium = bool(billing["is_premium"])

    family = None
    max_input = None
    max_output = None
    capabilities = entry.get("capabilities")
    if isinstance(capabilities, dict):
        if capabilities.get("family") is not None:
            family = str(capabilities["family"])
        limits = capabilities.get("limits")
        if isinstance(limits, dict):
            if _is_number(limits.get("max_prompt_tokens")):
                max_input = int(limits["max_prompt_tokens"])
            if _is_number(limits.get("max_output_tokens")):
                max_output = int(limits["max_output_tokens"])

    vendor = entry.get("vendor")
    vendor = vendor if isinstance(vendor, str) else None

    # Premium models are surfaced as preview unless flagged as the chat default
    is_preview = is_premium
    if "is_chat_default" in entry and bool(entry["is_chat_default"]):
        is_preview = False

    is_beta = "beta" in name.lower()

    description = entry.get("description")
    return ModelDescriptor(
        id=model_id,
        name=clean_model_name(name),
        description=description if isinstance(description, str) else None,
        vendor=vendor,
        family=family,
        token_multiplier=multiplier,
        max_input_tokens=max_input,
        max_output_tokens=max_output,
        is_preview=is_preview,
        is_beta=is_beta,
        is_premium=is_premium,
    )


def _model_entries(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    raise CatalogError(
        "Unexpected /models response shape.",
        code=CatalogError.MALFORMED_RESPONSE,
    )


def sort_models(models: Iterable[ModelDescriptor]) -> List[ModelDescriptor]:
    """Stable order: stable models first, then cheaper first, then by name."""
    return sorted(
        models,
        key=lambda m: (
            1 if m.is_beta_or_preview else 0,
            m.token_multiplier if m.token_multiplier is not None else 1.0,
            m.name,
        ),
    )


def parse_models(payload: Any) -> List[ModelDescriptor]:
    """Parse and sort a Copilot ``/models`` payload (array or ``{"data": [...]}``)."""
    models: List[ModelDescriptor] = []
    for entry in _model_entries(payload):
        try:
            model = parse_model_entry(entry)
        except Exception as exc:
            logger.debug("Skipping unparseable model entry %r: %s", entry, exc)
            continue
        if model is not None:
            models.append(model)
    return sort_models(models)


def parse_openai_compatible_models(payload: Any) -> List[ModelDescriptor]:
    """Parse an OpenAI-style ``{"data": [...]}`` listing, newest first."""
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise CatalogError(
            "Invalid response format: missing 'data' field",
            code=CatalogError.MALFORMED_RESPONSE,
        )

    models: List[ModelDescriptor] = []
    for entry in payload["data"]:
        try:
            model_id = entry.get("id")
            if not isinstance(model_id, str) or not model_id.strip():
                continue
            created = entry.get("created")
            display = entry.get("display_name")
            owned_by = entry.get("owned_by")
            models.append(
                ModelDescriptor(
                    id=model_id,
                    name=display if isinstance(display, str) and display.strip() else model_id,
                    owned_by=owned_by if isinstance(owned_by, str) and owned_by.strip() else None,
                    created=created if isinstance(created, int) and not isinstance(created, bool) else None,
                )
            )
        except Exception as exc:
            logger.debug("Skipping unparseable model entry %r: %s", entry, exc)
            continue

    return sorted(models, key=lambda m: m.created or 0, reverse=True)


def _raise_for_catalog_status(response: httpx.Response, *, subject: str) -> None:
    if response.status_code == 401:
        raise CatalogError(
            f"{subject} is invalid or expired. Please re-authenticate.",
            code=CatalogError.UNAUTHORIZED,
            status=401,
        )
    if response.status_code == 403:
        raise CatalogError(
            "Access denied. Your subscription may not have access to this API.",
            code=CatalogError.FORBIDDEN,
            status=403,
        )
    if response.status_code == 404:
        raise CatalogError(
            "Models endpoint not found. Please check the endpoint URL.",
            code=CatalogError.HTTP_ERROR,
            status=404,
        )
    if response.status_code >= 400:
        raise CatalogError(
            f"API error: {response.status_code} {response.reason_phrase}".strip(),
            code=CatalogError.HTTP_ERROR,
            status=response.status_code,
        )


async def _get_models_payload(
    url: str,
    *,
    client: Optional[httpx.AsyncClient],
    headers: Dict[str, str],
    timeout: float,
    subject: str,
) -> Any:
    async with client_scope(client, timeout=timeout) as http:
        try:
            response = await send(http, "GET", url, action="model list request", headers=headers)
        except NetworkError as exc:
            raise CatalogError(str(exc), code=exc.code) from exc

    _raise_for_catalog_status(response, subject=subject)
    try:
        return response.json()
    except ValueError as exc:
        raise CatalogError(
            "Failed to parse API response.",
            code=CatalogError.MALFORMED_RESPONSE,
        ) from exc


async def fetch_models(
    session: SessionToken,
    client: Optional[httpx.AsyncClient] = None,
    *,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> List[ModelDescriptor]:
    """Fetch the callable Copilot models for a session, sorted for display."""
    request_headers = {
        **(COPILOT_HEADERS if headers is None else headers),
        "Accept": "application/json",
        "Authorization": f"Bearer {session.token}",
    }
    payload = await _get_models_payload(
        session.models_url,
        client=client,
        headers=request_headers,
        timeout=timeout,
        subject="API token",
    )
    models = parse_models(payload)
    logger.info("Discovered %d available models", len(models))
    return models


async def fetch_openai_compatible_models(
    models_url: str,
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    *,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> List[ModelDescriptor]:
    """Fetch a generic OpenAI-compatible ``/models`` listing."""
    request_headers = {**(headers or {}), "Accept": "application/json"}
    if api_key and api_key.strip():
        request_headers["Authorization"] = f"Bearer {api_key}"
    payload = await _get_models_payload(
        models_url,
        client=client,
        headers=request_headers,
        timeout=timeout,
        subject="API key",
    )
    return parse_openai_compatible_models(payload)
