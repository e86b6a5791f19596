"""Tests for pilot_agent/model_catalog.py."""

import time

import httpx
import pytest

from pilot_agent.errors import CatalogError
from pilot_agent.model_catalog import (
    ModelDescriptor,
    clean_model_name,
    fetch_models,
    fetch_openai_compatible_models,
    parse_model_entry,
    parse_models,
    parse_openai_compatible_models,
    sort_models,
)
from pilot_agent.session_token import SessionToken


def _entry(model_id, **overrides):
    entry = {
        "id": model_id,
        "name": model_id.upper(),
        "vendor": "OpenAI",
        "model_picker_enabled": True,
        "policy": {"state": "enabled"},
        "capabilities": {
            "family": model_id,
            "limits": {"max_prompt_tokens": 64000, "max_output_tokens": 4096},
        },
    }
    entry.update(overrides)
    return entry


def _session():
    return SessionToken("sess-token", "https://api.githubcopilot.test", int(time.time()) + 1800)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestParseModelEntry:
    def test_full_entry(self):
        model = parse_model_entry(_entry(
            "gpt-4o",
            name="GPT-4o",
            billing={"multiplier": 0, "is_premium": False},
            description="Fast",
        ))
        assert model.id == "gpt-4o"
        assert model.name == "GPT-4o"
        assert model.vendor == "OpenAI"
        assert model.family == "gpt-4o"
        assert model.token_multiplier == 0.0
        assert model.max_input_tokens == 64000
        assert model.max_output_tokens == 4096
        assert model.description == "Fast"
        assert not model.is_preview
        assert not model.is_beta

    def test_disabled_policy_is_hidden(self):
        assert parse_model_entry(_entry("m", policy={"state": "disabled"})) is None

    def test_null_policy_state_is_kept(self):
        assert parse_model_entry(_entry("m", policy={"state": None})) is not None

    def test_missing_policy_is_kept(self):
        entry = _entry("m")
        del entry["policy"]
        assert parse_model_entry(entry) is not None

    def test_picker_disabled_is_always_hidden(self):
        entry = _entry("m", model_picker_enabled=False, is_chat_default=True, policy={"state": "enabled"})
        assert parse_model_entry(entry) is None

    def test_missing_or_empty_id_is_hidden(self):
        assert parse_model_entry({"name": "No id"}) is None
        assert parse_model_entry({"id": "", "name": "Empty"}) is None

    def test_name_falls_back_to_id(self):
        entry = _entry("claude-sonnet")
        del entry["name"]
        assert parse_model_entry(entry).name == "claude-sonnet"

    def test_premium_is_preview_unless_chat_default(self):
        premium = parse_model_entry(_entry("o1", billing={"multiplier": 10, "is_premium": True}))
        assert premium.is_premium
        assert premium.is_preview

        default = parse_model_entry(_entry(
            "o1", billing={"multiplier": 10, "is_premium": True}, is_chat_default=True,
        ))
        assert default.is_premium
        assert not default.is_preview

    def test_beta_detected_from_raw_name_and_stripped(self):
        model = parse_model_entry(_entry("gemini", name="Gemini 2.0 Flash (Beta)"))
        assert model.is_beta
        assert model.name == "Gemini 2.0 Flash"

    def test_non_numeric_multiplier_is_ignored(self):
        model = parse_model_entry(_entry("m", billing={"multiplier": "lots"}))
        assert model.token_multiplier is None

    def test_non_string_vendor_is_ignored(self):
        model = parse_model_entry(_entry("m", vendor={"name": "Acme"}))
        assert model.vendor is None


class TestCleanModelName:
    @pytest.mark.parametrize("raw,expected", [
        ("GPT-4o (Preview)", "GPT-4o"),
        ("o3-mini (beta)", "o3-mini"),
        ("GPT 4o Preview Mini", "GPT 4o Mini"),
        ("Plain", "Plain"),
    ])
    def test_tags_removed(self, raw, expected):
        assert clean_model_name(raw) == expected


class TestParseModels:
    def test_accepts_bare_array(self):
        models = parse_models([_entry("a"), _entry("b")])
        assert [m.id for m in models] == ["a", "b"]

    def test_accepts_data_wrapper(self):
        models = parse_models({"data": [_entry("a")], "object": "list"})
        assert [m.id for m in models] == ["a"]

    @pytest.mark.parametrize("payload", [{"models": []}, "nope", None, 42])
    def test_other_shapes_are_malformed(self, payload):
        with pytest.raises(CatalogError) as exc_info:
            parse_models(payload)
        assert exc_info.value.code == CatalogError.MALFORMED_RESPONSE

    def test_malformed_entry_is_skipped(self):
        payload = [
            _entry("good"),
            "not-a-dict",
            {"id": "bad", "capabilities": {"limits": {"max_prompt_tokens": float("inf")}}},
        ]
        models = parse_models(payload)
        assert [m.id for m in models] == ["good"]

    def test_sort_order(self):
        payload = [
            _entry("c", name="C", billing={"multiplier": 0.33, "is_premium": True}),
            _entry("b", name="B", billing={"multiplier": 0.33}),
            _entry("a", name="A", billing={"multiplier": 1}),
        ]
        assert [m.name for m in parse_models(payload)] == ["B", "A", "C"]

    def test_missing_multiplier_sorts_as_one(self):
        models = sort_models([
            ModelDescriptor(id="x", name="X", token_multiplier=2.0),
            ModelDescriptor(id="y", name="Y"),
            ModelDescriptor(id="z", name="Z", token_multiplier=1.0),
        ])
        assert [m.id for m in models] == ["y", "z", "x"]

    def test_duplicate_ids_are_kept(self):
        models = parse_models([_entry("dup", name="One"), _entry("dup", name="Two")])
        assert len(models) == 2


class TestModelPresentation:
    def test_display_name_tags(self):
        assert ModelDescriptor(id="a", name="A").display_name == "A"
        assert ModelDescriptor(id="a", name="A", token_multiplier=0).display_name == "A [free]"
        assert ModelDescriptor(id="a", name="A", token_multiplier=1).display_name == "A [1x]"
        assert (
            ModelDescriptor(id="a", name="A", token_multiplier=0.33, is_preview=True).display_name
            == "A [0.33x, Preview]"
        )
        assert (
            ModelDescriptor(id="a", name="A", is_beta=True, is_preview=True).display_name
            == "A [Beta]"
        )

    def test_tooltip_lists_metadata(self):
        model = ModelDescriptor(
            id="gpt-4o",
            name="GPT-4o",
            vendor="OpenAI",
            family="gpt-4o",
            token_multiplier=1.0,
            max_input_tokens=128000,
            description="Flagship",
        )
        tooltip = model.tooltip
        assert "ID: gpt-4o" in tooltip
        assert "Vendor: OpenAI" in tooltip
        assert "Max Input: 128,000 tokens" in tooltip
        assert tooltip.endswith("Flagship")


class TestFetchModels:
    @pytest.mark.asyncio
    async def test_uses_bearer_session_token_and_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": [_entry("gpt-4o")]})

        models = await fetch_models(_session(), _client(handler))

        assert [m.id for m in models] == ["gpt-4o"]
        request = seen[0]
        assert str(request.url) == "https://api.githubcopilot.test/models"
        assert request.headers["Authorization"] == "Bearer sess-token"
        assert request.headers["Copilot-Integration-Id"] == "vscode-chat"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code", [
        (401, CatalogError.UNAUTHORIZED),
        (403, CatalogError.FORBIDDEN),
        (404, CatalogError.HTTP_ERROR),
        (502, CatalogError.HTTP_ERROR),
    ])
    async def test_http_errors(self, status, code):
        client = _client(lambda request: httpx.Response(status, text="err"))

        with pytest.raises(CatalogError) as exc_info:
            await fetch_models(_session(), client)

        assert exc_info.value.code == code
        assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(CatalogError) as exc_info:
            await fetch_models(_session(), client)

        assert exc_info.value.code == CatalogError.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(CatalogError) as exc_info:
            await fetch_models(_session(), _client(handler))

        assert exc_info.value.code == CatalogError.TIMEOUT


class TestOpenAICompatibleModels:
    def test_parse_sorted_newest_first(self):
        payload = {"data": [
            {"id": "old", "created": 100, "owned_by": "system"},
            {"id": "new", "created": 200, "display_name": "New Model"},
            {"id": " ", "created": 300},
            {"id": "undated"},
        ]}
        models = parse_openai_compatible_models(payload)
        assert [m.id for m in models] == ["new", "old", "undated"]
        assert models[0].name == "New Model"
        assert models[1].owned_by == "system"

    def test_missing_data_is_malformed(self):
        with pytest.raises(CatalogError) as exc_info:
            parse_openai_compatible_models([{"id": "x"}])
        assert exc_info.value.code == CatalogError.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_api_key_is_optional(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": [{"id": "llama3"}]})

        models = await fetch_openai_compatible_models(
            "http://localhost:11434/v1/models", None, _client(handler),
        )

        assert [m.id for m in models] == ["llama3"]
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_api_key_sent_as_bearer(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        await fetch_openai_compatible_models("https://api.openai.com/v1/models", "sk-1", _client(handler))

        assert seen[0].headers["Authorization"] == "Bearer sk-1"
