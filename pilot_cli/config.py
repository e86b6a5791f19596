"""
Configuration helpers for the pilot CLI.

Config files are stored in ~/.pilotchat/ (override with PILOT_HOME):
  config.yaml  -- provider, model and reference-text settings
  .env         -- secrets such as COPILOT_OAUTH_TOKEN or OPENAI_API_KEY
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values, load_dotenv, set_key

from pilot_agent.conversation import ConversationOptions, ReferenceTextPolicy, Role

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "provider": "copilot",
    "model": None,
    "enterprise_uri": None,
    "auto_discover": True,
    "timeout": 30,
    "system_prompt": "You are a helpful assistant. Answer concisely and use fenced code blocks for code.",
    "reference_text": {
        "policy": "change_old_to_placeholder",
        "header": "Reference Text",
        "placeholder": None,
        "max_chars": 5000,
    },
    "providers": {},
}


def get_pilot_home() -> Path:
    return Path(os.getenv("PILOT_HOME", Path.home() / ".pilotchat"))


def get_config_path() -> Path:
    return get_pilot_home() / "config.yaml"


def get_env_path() -> Path:
    return get_pilot_home() / ".env"


def ensure_pilot_home() -> Path:
    home = get_pilot_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config() -> Dict[str, Any]:
    """Load config.yaml merged over DEFAULT_CONFIG (unreadable files fall back to defaults)."""
    config_path = get_config_path()
    if not config_path.exists():
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read %s, using defaults: %s", config_path, e)
        return copy.deepcopy(DEFAULT_CONFIG)

    if not isinstance(loaded, dict):
        logger.warning("Ignoring %s: top level is not a mapping", config_path)
        return copy.deepcopy(DEFAULT_CONFIG)

    return _deep_merge(DEFAULT_CONFIG, loaded)


def save_config(config: Dict[str, Any]) -> Path:
    ensure_pilot_home()
    config_path = get_config_path()
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def load_env() -> Optional[Path]:
    """Load ~/.pilotchat/.env into os.environ (existing variables win)."""
    env_path = get_env_path()
    if not env_path.exists():
        return None
    try:
        load_dotenv(dotenv_path=env_path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(dotenv_path=env_path, encoding="latin-1")
    logger.debug("Loaded environment variables from %s", env_path)
    return env_path


def get_env_value(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value:
        return value
    env_path = get_env_path()
    if env_path.exists():
        return dotenv_values(env_path).get(key) or None
    return None


def save_env_value(key: str, value: str) -> Path:
    ensure_pilot_home()
    env_path = get_env_path()
    env_path.touch(exist_ok=True)
    set_key(str(env_path), key, value)
    try:
        env_path.chmod(0o600)
    except OSError as e:
        logger.debug("Could not restrict permissions on %s: %s", env_path, e)
    return env_path


def conversation_options_from_config(
    config: Dict[str, Any], *, reference_text_role: str = "user"
) -> ConversationOptions:
    """Build ConversationOptions from the ``reference_text`` config section."""
    section = config.get("reference_text") or {}
    max_chars = section.get("max_chars")
    return ConversationOptions(
        reference_text_policy=ReferenceTextPolicy.parse(section.get("policy") or "change_old_to_placeholder"),
        reference_text_header=section.get("header") or "Reference Text",
        placeholder_text=section.get("placeholder") or None,
        reference_text_role=Role(str(reference_text_role).lower()),
        max_reference_text_chars=int(max_chars) if max_chars is not None else 5000,
    )


def _is_env_key(key: str) -> bool:
    return key.isupper() and "." not in key


def _parse_value(raw: str) -> Any:
    # "30", "true" and "null" become YAML scalars; anything unparseable stays a string
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def get_config_value(key: str) -> Any:
    """Read a dotted config key (``reference_text.policy``) or an env variable."""
    if _is_env_key(key):
        return get_env_value(key)
    node: Any = load_config()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def set_config_value(key: str, value: str) -> Path:
    """Persist one setting; upper-case names go to .env, everything else to config.yaml."""
    if _is_env_key(key):
        return save_env_value(key, value)

    config = load_config()
    parts = key.split(".")
    node = config
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = _parse_value(value)
    return save_config(config)
