"""Discovery and persistence of the long-lived GitHub Copilot OAuth token.

IDE plugins store the token in a small JSON file:

  apps.json   {"<app id>": {"user": "...", "oauth_token": "gho_..."}, ...}
  hosts.json  {"github.com": {"user": "...", "oauth_token": "gho_..."}}

Lookup is best effort: unreadable or malformed files are skipped and the
next location is tried.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pilot_constants import COPILOT_APP_KEY, COPILOT_CONFIG_DIR_NAME

logger = logging.getLogger(__name__)

EnvGetter = Callable[[str], Optional[str]]

TOKEN_ENV_VARS = ("COPILOT_OAUTH_TOKEN", "GITHUB_COPILOT_TOKEN")


def _config_home(env_get: EnvGetter, home: Path) -> Path:
    xdg = env_get("XDG_CONFIG_HOME")
    if xdg and xdg.strip():
        return Path(xdg)
    return home / ".config"


def possible_token_locations(
    *,
    env_get: EnvGetter = os.getenv,
    home: Optional[Path] = None,
    platform: str = sys.platform,
) -> List[Path]:
    """Candidate token files in lookup order."""
    home = home or Path.home()
    locations: List[Path] = []

    if platform.startswith("win"):
        local_app_data = env_get("LOCALAPPDATA")
        if local_app_data:
            locations.append(Path(local_app_data) / COPILOT_CONFIG_DIR_NAME / "apps.json")
        app_data = env_get("APPDATA")
        if app_data:
            locations.append(Path(app_data) / COPILOT_CONFIG_DIR_NAME / "hosts.json")

    config_dir = _config_home(env_get, home) / COPILOT_CONFIG_DIR_NAME
    locations.append(config_dir / "apps.json")
    locations.append(config_dir / "hosts.json")
    return locations


def _read_json_object(path: Path) -> Dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.debug("Skipping token file %s: %s", path, e)
        return {}
    return raw if isinstance(raw, dict) else {}


def extract_oauth_token(data: Dict[str, Any]) -> Optional[str]:
    """Return the first non-empty ``oauth_token`` nested one level deep.

    ``github.com`` entries (the hosts.json layout) are preferred over other
    app entries.
    """
    keys = sorted(data, key=lambda k: 0 if str(k).startswith("github.com") else 1)
    for key in keys:
        entry = data[key]
        if not isinstance(entry, dict):
            continue
        token = entry.get("oauth_token")
        if isinstance(token, str) and token.strip():
            return token.strip()
    return None


def discover_token(
    *,
    env_get: EnvGetter = os.getenv,
    home: Optional[Path] = None,
    platform: str = sys.platform,
    include_env: bool = True,
) -> Optional[str]:
    """Find a previously issued OAuth token (env vars first, then IDE files)."""
    if include_env:
        for var in TOKEN_ENV_VARS:
            value = env_get(var)
            if isinstance(value, str) and value.strip():
                logger.debug("Using OAuth token from $%s", var)
                return value.strip()

    for path in possible_token_locations(env_get=env_get, home=home, platform=platform):
        if not path.exists():
            continue
        token = extract_oauth_token(_read_json_object(path))
        if token:
            logger.info("Discovered Copilot OAuth token in %s", path)
            return token
    return None


def primary_token_path(
    *,
    env_get: EnvGetter = os.getenv,
    home: Optional[Path] = None,
    platform: str = sys.platform,
) -> Path:
    """The apps.json file new tokens are written to."""
    for path in possible_token_locations(env_get=env_get, home=home, platform=platform):
        if path.name == "apps.json":
            return path
    return _config_home(env_get, home or Path.home()) / COPILOT_CONFIG_DIR_NAME / "apps.json"


def save_oauth_token(
    token: str,
    *,
    path: Optional[Path] = None,
    app_key: str = COPILOT_APP_KEY,
) -> Optional[Path]:
    """Persist the token under ``app_key``, keeping other apps' entries.

    Best effort: returns None when the file could not be written, the token
    is still usable for the current session.
    """
    target = path or primary_token_path()
    try:
        data = _read_json_object(target) if target.exists() else {}
        data[app_key] = {"oauth_token": token}
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        target.chmod(0o600)
    except OSError as e:
        logger.debug("Could not persist OAuth token to %s: %s", target, e)
        return None
    return target


class TokenStore:
    """Discovery and persistence bound to one location set (injectable for tests)."""

    def __init__(self, *, path: Optional[Path] = None, app_key: str = COPILOT_APP_KEY):
        self._path = path
        self._app_key = app_key

    def discover(self) -> Optional[str]:
        if self._path is not None:
            return extract_oauth_token(_read_json_object(self._path)) if self._path.exists() else None
        return discover_token()

    def save(self, token: str) -> Optional[Path]:
        return save_oauth_token(token, path=self._path, app_key=self._app_key)
