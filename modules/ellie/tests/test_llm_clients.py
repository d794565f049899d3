"""Tests for llm_clients.py: gateway caller, provider resolution, JSON parsing."""

import os
import sys
import urllib.error
from unittest.mock import MagicMock

# Ensure module root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from lib.errors import ConfigurationError, GatewayError, MalformedOutputError
from lib.llm_clients import (
    JSON_ONLY_SYSTEM_PROMPT,
    GatewayCaller,
    extract_json_payload,
    get_llm_provider,
    parse_json_response,
    set_llm_provider,
)
from lib.providers import (
    AnthropicLLMProvider,
    LLMResult,
    OpenAICompatibleLLMProvider,
    TestLLMProvider,
)


# ---------------------------------------------------------------------------
# parse_json_response / extract_json_payload
# ---------------------------------------------------------------------------

class TestParseJsonResponse:
    def test_plain_json_dict(self):
        assert parse_json_response('{"key": "value"}') == {"key": "value"}

    def test_json_fenced_with_backticks(self):
        assert parse_json_response('```json\n{"key": "value"}\n```') == {"key": "value"}

    def test_json_with_surrounding_text(self):
        text = 'Here is the result:\n{"key": "value"}\nThat was the output.'
        assert parse_json_response(text) == {"key": "value"}

    def test_array_with_surrounding_text(self):
        assert parse_json_response('ids: ["a", "b"] done') == ["a", "b"]

    def test_invalid_json_returns_none(self):
        assert parse_json_response("{not valid json}") is None

    def test_empty_returns_none(self):
        assert parse_json_response("") is None
        assert parse_json_response(None) is None


class TestExtractJsonPayload:
    def test_empty_output(self):
        with pytest.raises(MalformedOutputError, match="empty output"):
            extract_json_payload("   ")

    def test_no_json(self):
        with pytest.raises(MalformedOutputError, match="no json object found"):
            extract_json_payload("sorry, I cannot help")

    def test_fenced_object(self):
        assert extract_json_payload('```\n{"keep": "m1"}\n```') == {"keep": "m1"}


# ---------------------------------------------------------------------------
# Provider resolution
# ---------------------------------------------------------------------------

class TestProviderResolution:
    def test_default_is_anthropic(self):
        assert isinstance(get_llm_provider(), AnthropicLLMProvider)

    def test_openai_compatible(self, write_config):
        write_config({"models": {"llmProvider": "openai-compatible", "baseUrl": "http://llm:8000"}})
        set_llm_provider(None)
        assert isinstance(get_llm_provider(), OpenAICompatibleLLMProvider)

    def test_unknown_provider(self, write_config):
        write_config({"models": {"llmProvider": "telepathy"}})
        set_llm_provider(None)
        with pytest.raises(ConfigurationError, match="Unknown llm provider"):
            get_llm_provider()

    def test_override(self):
        provider = TestLLMProvider()
        set_llm_provider(provider)
        assert get_llm_provider() is provider


# ---------------------------------------------------------------------------
# GatewayCaller
# ---------------------------------------------------------------------------

class TestGatewayCaller:
    def test_sends_system_and_user_messages(self):
        provider = TestLLMProvider(responses=['{"ok": true}'])
        result = GatewayCaller(provider).call("org-1", "  classify this  ")
        assert result.text == '{"ok": true}'
        assert result.model == "claude-haiku-4-5"
        assert result.trace_id == "trace-1"
        messages = provider.calls[0]["messages"]
        assert messages[0] == {"role": "system", "content": JSON_ONLY_SYSTEM_PROMPT}
        assert messages[1] == {"role": "user", "content": "classify this"}

    def test_requires_org_and_prompt(self):
        caller = GatewayCaller(TestLLMProvider())
        with pytest.raises(ConfigurationError, match="org_id"):
            caller.call(" ", "prompt")
        with pytest.raises(ConfigurationError, match="prompt"):
            caller.call("org", "")

    def test_empty_payload_is_gateway_error(self):
        with pytest.raises(GatewayError, match="payload is empty"):
            GatewayCaller(TestLLMProvider(responses=["  "])).call("org", "p")

    def test_model_token_guard(self):
        caller = GatewayCaller(TestLLMProvider(model="gpt-4o"), expected_model_token="haiku")
        with pytest.raises(GatewayError, match="does not include required token"):
            caller.call("org", "p")

    def test_model_token_guard_case_insensitive(self):
        caller = GatewayCaller(TestLLMProvider(model="Claude-HAIKU-4-5"), expected_model_token="haiku")
        assert caller.call("org", "p").model == "Claude-HAIKU-4-5"

    def test_missing_trace_id_generated(self):
        provider = MagicMock()
        provider.llm_call.return_value = LLMResult(text="{}", duration=0.1, model="m")
        result = GatewayCaller(provider).call("org", "p")
        assert len(result.trace_id) == 32

    def test_no_retry_by_default(self):
        provider = TestLLMProvider(responses=[TimeoutError("slow"), "{}"])
        with pytest.raises(GatewayError, match="TimeoutError"):
            GatewayCaller(provider).call("org", "p")
        assert len(provider.calls) == 1

    def test_retries_transient_errors(self):
        sleeps = []
        provider = TestLLMProvider(responses=[ConnectionError("reset"), "{}"])
        caller = GatewayCaller(provider, max_retries=2, sleep=sleeps.append)
        assert caller.call("org", "p").text == "{}"
        assert len(provider.calls) == 2
        assert sleeps == [1.0]

    def test_does_not_retry_client_errors(self):
        err = urllib.error.HTTPError("http://x", 400, "bad request", {}, None)
        provider = TestLLMProvider(responses=[err, "{}"])
        caller = GatewayCaller(provider, max_retries=3, sleep=lambda s: None)
        with pytest.raises(GatewayError):
            caller.call("org", "p")
        assert len(provider.calls) == 1

    def test_from_config(self, write_config):
        write_config({"models": {"gatewayTier": "deep", "expectedModelToken": "", "gatewayMaxRetries": 2}})
        caller = GatewayCaller.from_config(TestLLMProvider())
        assert caller.model_tier == "deep"
        assert caller.expected_model_token == ""
        assert caller.max_retries == 2
