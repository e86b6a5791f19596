"""
Provider registry for the pilot CLI.

Only GitHub Copilot goes through the OAuth/session-token exchange. The other
entries are OpenAI-compatible endpoints driven by a static API key; they share
the chat and catalog code through a session provider that never expires.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from pilot_constants import (
    COPILOT_HEADERS,
    GITHUB_MODELS_BASE_URL,
    OLLAMA_BASE_URL,
    OPENAI_BASE_URL,
)

EnvGetter = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    auth_type: str  # "oauth" or "api_key"
    description: str = ""
    default_base_url: str = ""
    default_model: str = ""
    models_path: str = "/models"
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    token_required: bool = True
    allow_endpoint_customization: bool = False
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    # Role the reference-text block is stored under; several APIs reject
    # developer/tool messages for this content.
    reference_text_role: str = "user"


PROVIDERS: Dict[str, ProviderMeta] = {
    "copilot": ProviderMeta(
        id="copilot",
        label="GitHub Copilot",
        auth_type="oauth",
        description="Uses your existing GitHub Copilot subscription. Token auto-discovered from IDE configs.",
        default_model="gpt-4o",
        extra_headers=dict(COPILOT_HEADERS),
        aliases=("github-copilot", "githubcopilot"),
    ),
    "github-models": ProviderMeta(
        id="github-models",
        label="GitHub Models",
        auth_type="api_key",
        description="Uses GitHub Models with your GitHub PAT (Personal Access Token)",
        default_base_url=GITHUB_MODELS_BASE_URL,
        default_model="gpt-4o",
        api_key_env_vars=("GITHUB_TOKEN", "GITHUB_PAT"),
        aliases=("githubmodel", "github-model"),
    ),
    "openai": ProviderMeta(
        id="openai",
        label="OpenAI",
        auth_type="api_key",
        description="Uses OpenAI API directly with your API key",
        default_base_url=OPENAI_BASE_URL,
        default_model="gpt-4o",
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
    ),
    "ollama": ProviderMeta(
        id="ollama",
        label="Local / Custom Endpoint (Ollama)",
        auth_type="api_key",
        description="Connects to a custom OpenAI-compatible endpoint",
        default_base_url=OLLAMA_BASE_URL,
        default_model="llama3",
        api_key_env_vars=("OLLAMA_API_KEY",),
        base_url_env_var="OLLAMA_BASE_URL",
        token_required=False,
        allow_endpoint_customization=True,
        aliases=("local", "custom"),
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid


def normalize_provider_id(provider_id: Optional[str], default: str = "copilot") -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider(provider_id: Optional[str]) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def list_provider_ids() -> List[str]:
    return list(PROVIDERS)


def resolve_provider_api_key(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    if explicit_api_key:
        return explicit_api_key
    meta = get_provider(provider_id)
    if not meta:
        return None
    for env_var in meta.api_key_env_vars:
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    """Resolve base URL: explicit (when customizable), env override, provider default."""
    meta = get_provider(provider_id)
    if not meta:
        return explicit_base_url.strip().rstrip("/") if explicit_base_url else None
    if explicit_base_url and explicit_base_url.strip() and meta.allow_endpoint_customization:
        return explicit_base_url.strip().rstrip("/")
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


def resolve_models_url(base_url: str, models_path: str) -> str:
    """Absolute models URL; ``models_path`` may itself be a full URL."""
    if "://" in models_path:
        return models_path
    return f"{base_url.rstrip('/')}{models_path}"


def provider_cli_choices() -> List[str]:
    return list_provider_ids()
