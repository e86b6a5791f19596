"""
pilot -- command line entry point.

Usage:
    pilot login [--enterprise-uri URL] [--no-browser]
    pilot status
    pilot models [--provider ID]
    pilot chat [--provider ID] [--model ID] [--reference-file PATH] [--policy NAME]
    pilot config [show | get KEY | set KEY VALUE]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from pilot_agent.async_bridge import run_async
from pilot_agent.chat_client import ChatCompletionClient
from pilot_agent.conversation import ConversationHistory, ReferenceTextPolicy
from pilot_agent.errors import PilotError, TurnError, format_error
from pilot_agent.http import mask_token
from pilot_agent.model_catalog import ModelDescriptor, fetch_models, fetch_openai_compatible_models
from pilot_agent.orchestrator import ChatTurnOrchestrator
from pilot_agent.session_token import (
    CopilotSessionProvider,
    SessionTokenManager,
    StaticSessionProvider,
)
from pilot_cli import provider_registry as registry
from pilot_cli.config import (
    conversation_options_from_config,
    get_config_path,
    get_config_value,
    get_env_value,
    load_config,
    load_env,
    set_config_value,
)
from pilot_cli.login import login_command, status_command
from pilot_cli.token_store import discover_token

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        # Keep third-party libraries at WARNING level to reduce noise
        for noisy in ("httpx", "httpcore", "openai", "openai._base_client", "asyncio"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        for noisy in ("httpx", "httpcore", "openai", "openai._base_client"):
            logging.getLogger(noisy).setLevel(logging.ERROR)
        logging.getLogger("pilot_agent").setLevel(logging.WARNING)


def _provider_settings(config: Dict[str, Any], provider_id: str) -> Dict[str, Any]:
    providers = config.get("providers") or {}
    settings = providers.get(provider_id) if isinstance(providers, dict) else None
    return settings if isinstance(settings, dict) else {}


def build_session_provider(
    config: Dict[str, Any],
    provider_id: str,
    *,
    oauth_token: Optional[str] = None,
) -> Tuple[Any, registry.ProviderMeta]:
    """Create the session provider for the configured provider."""
    meta = registry.get_provider(provider_id)
    if meta is None:
        raise TurnError(f"Unknown provider: {provider_id}", code=TurnError.NOT_CONFIGURED)

    timeout = float(config.get("timeout") or 30)
    settings = _provider_settings(config, meta.id)

    if meta.auth_type == "oauth":
        token = oauth_token or settings.get("token")
        if not token and config.get("auto_discover", True):
            token = discover_token()
        if not token:
            raise TurnError(
                "No OAuth token available. Run `pilot login` or enable auto-discovery.",
                code=TurnError.NOT_CONFIGURED,
            )
        manager = SessionTokenManager(
            enterprise_uri=config.get("enterprise_uri"),
            headers=meta.extra_headers,
            timeout=timeout,
        )
        return CopilotSessionProvider(manager, token), meta

    api_key = registry.resolve_provider_api_key(meta.id, explicit_api_key=settings.get("api_key"))
    if meta.token_required and not api_key:
        env_vars = ", ".join(meta.api_key_env_vars) or "an API key"
        raise TurnError(
            f"{meta.label} needs an API key. Set {env_vars}.",
            code=TurnError.NOT_CONFIGURED,
        )
    base_url = registry.resolve_provider_base_url(meta.id, explicit_base_url=settings.get("base_url"))
    if not base_url:
        raise TurnError(f"{meta.label} has no endpoint configured.", code=TurnError.NOT_CONFIGURED)
    return StaticSessionProvider(api_key or "", base_url), meta


async def _list_models(config: Dict[str, Any], provider_id: str) -> List[ModelDescriptor]:
    session_provider, meta = build_session_provider(config, provider_id)
    timeout = float(config.get("timeout") or 30)
    session = await session_provider.get_session()
    if meta.auth_type == "oauth":
        return await fetch_models(session, headers=meta.extra_headers, timeout=timeout)
    settings = _provider_settings(config, meta.id)
    models_url = registry.resolve_models_url(
        session.api_endpoint, settings.get("models_path") or meta.models_path
    )
    return await fetch_openai_compatible_models(
        models_url, session.token, headers=meta.extra_headers, timeout=timeout,
    )


def models_command(args) -> None:
    config = load_config()
    provider_id = registry.normalize_provider_id(getattr(args, "provider", None) or config.get("provider"))
    try:
        models = run_async(_list_models(config, provider_id))
    except PilotError as exc:
        print(f"Failed to fetch models: {format_error(exc)}")
        raise SystemExit(1)

    if not models:
        print("No models available.")
        return
    print(f"Discovered {len(models)} available models:")
    for model in models:
        print(f"  {model.id:<32} {model.display_name}")
        if getattr(args, "verbose_models", False):
            for line in model.tooltip.splitlines():
                print(f"      {line}")


def _file_reader(path: Optional[str]) -> Callable[[], str]:
    if not path:
        return lambda: ""
    file_path = Path(path).expanduser()

    def _read() -> str:
        try:
            return file_path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Could not read %s: %s", file_path, e)
            return ""

    return _read


def build_orchestrator(config: Dict[str, Any], args) -> ChatTurnOrchestrator:
    provider_id = registry.normalize_provider_id(getattr(args, "provider", None) or config.get("provider"))
    session_provider, meta = build_session_provider(config, provider_id)

    options = conversation_options_from_config(config, reference_text_role=meta.reference_text_role)
    if getattr(args, "policy", None):
        options.reference_text_policy = ReferenceTextPolicy.parse(args.policy)
    if getattr(args, "header", None):
        options.reference_text_header = args.header

    prompt_file = getattr(args, "system_prompt_file", None)
    if prompt_file:
        system_prompt = _file_reader(prompt_file)
    else:
        system_prompt = lambda: config.get("system_prompt") or ""

    history = ConversationHistory(options, system_prompt)
    orchestrator = ChatTurnOrchestrator(history)
    chat_client = ChatCompletionClient(
        headers=meta.extra_headers,
        timeout=float(config.get("timeout") or 30) * 4,
    )
    model = getattr(args, "model", None) or config.get("model") or meta.default_model
    orchestrator.configure(session_provider, chat_client, model)
    if getattr(args, "debug", False):
        orchestrator.debug_hook = lambda text: print(text, file=sys.stderr)
    return orchestrator


async def _chat_loop(orchestrator: ChatTurnOrchestrator, read_reference: Callable[[], str]) -> None:
    try:
        await _read_turns(orchestrator, read_reference)
    finally:
        await orchestrator.aclose()


async def _read_turns(orchestrator: ChatTurnOrchestrator, read_reference: Callable[[], str]) -> None:
    while True:
        try:
            question = (await asyncio.to_thread(input, "you> ")).strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not question:
            continue
        if question in ("/quit", "/exit"):
            break
        if question == "/clear":
            orchestrator.clear_conversation()
            print("Conversation cleared.")
            continue

        print("Thinking...")
        try:
            reply = await orchestrator.send_turn(question, read_reference())
        except PilotError as exc:
            print(f"Error: {format_error(exc)}")
            continue
        print(f"ai> {reply}")


def chat_command(args) -> None:
    config = load_config()
    try:
        orchestrator = build_orchestrator(config, args)
    except (PilotError, ValueError) as exc:
        print(f"Configuration Error: {format_error(exc)}")
        raise SystemExit(1)

    read_reference = _file_reader(getattr(args, "reference_file", None))
    print(f"Connected using {orchestrator.model}. Type /clear to reset, /quit to exit.")
    try:
        run_async(_chat_loop(orchestrator, read_reference))
    except KeyboardInterrupt:
        print()


def config_command(args) -> None:
    action = getattr(args, "config_action", None) or "show"

    if action == "set":
        path = set_config_value(args.key, args.value)
        print(f"Saved {args.key} to {path}")
        return

    if action == "get":
        value = get_config_value(args.key)
        if value is None:
            print(f"{args.key} is not set.")
            raise SystemExit(1)
        print(mask_token(value) if args.key.isupper() else value)
        return

    config = load_config()
    print(f"Config file: {get_config_path()}")
    print(yaml.safe_dump(config, sort_keys=False).rstrip())
    print()
    print("API keys:")
    for provider_id in registry.list_provider_ids():
        meta = registry.get_provider(provider_id)
        for env_var in meta.api_key_env_vars:
            state = "set" if get_env_value(env_var) else "not set"
            print(f"  {env_var:<20} {state}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pilot", description="Chat with GitHub Copilot from the terminal.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    login = subparsers.add_parser("login", help="Sign in with the GitHub device flow")
    login.add_argument("--enterprise-uri", help="GitHub Enterprise URI, e.g. https://github.acme.com")
    login.add_argument("--no-browser", action="store_true", help="Do not open the verification URL")
    login.add_argument("--timeout", type=float, help="HTTP timeout in seconds")
    login.add_argument("--skip-models", dest="list_models", action="store_false",
                       help="Do not list models after signing in")
    login.set_defaults(func=login_command)

    status = subparsers.add_parser("status", help="Show sign-in state and token locations")
    status.set_defaults(func=status_command)

    models = subparsers.add_parser("models", help="List models available to you")
    models.add_argument("--provider", choices=registry.provider_cli_choices())
    models.add_argument("--details", dest="verbose_models", action="store_true",
                        help="Show model metadata")
    models.set_defaults(func=models_command)

    chat = subparsers.add_parser("chat", help="Interactive chat")
    chat.add_argument("--provider", choices=registry.provider_cli_choices())
    chat.add_argument("--model")
    chat.add_argument("--reference-file", help="File re-read before every turn and sent as reference text")
    chat.add_argument("--system-prompt-file", help="File re-read before every turn and used as system prompt")
    chat.add_argument("--policy", choices=[p.value for p in ReferenceTextPolicy],
                      help="How changed reference text replaces the old copy")
    chat.add_argument("--header", help="Header naming the reference text")
    chat.add_argument("--debug", action="store_true", help="Print the transcript sent on every turn")
    chat.set_defaults(func=chat_command)

    config = subparsers.add_parser("config", help="Show or change saved settings")
    config_sub = config.add_subparsers(dest="config_action")
    config_sub.add_parser("show", help="Print the merged configuration")
    config_get = config_sub.add_parser("get", help="Print one setting")
    config_get.add_argument("key", help="Dotted config key or an environment variable name")
    config_set = config_sub.add_parser("set", help="Save one setting")
    config_set.add_argument("key", help="Dotted config key (model, reference_text.policy) or API key name")
    config_set.add_argument("value")
    config.set_defaults(func=config_command)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    load_env()

    if not getattr(args, "func", None):
        parser.print_help()
        raise SystemExit(2)
    args.func(args)


if __name__ == "__main__":
    main()
