import dataclasses
import json
from types import SimpleNamespace

import httpx
import pytest

from metahub.config.settings import get_settings
from metahub.persistence.models import ProviderType
from metahub.providers.anthropic_provider import AnthropicProvider
from metahub.providers.base import Prompt, ProviderError
from metahub.providers.openai_provider import OpenAIProvider
from metahub.providers.registry import build_provider, build_reply_provider, list_supported_provider_types


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)


def _transport(*responses):
    """Replays the given (status, body) pairs and records every request."""
    queue = list(responses)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json=body)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


OPENAI_OK = {
    "model": "gpt-4o-mini",
    "choices": [{"message": {"role": "assistant", "content": "  Ships tomorrow.  "}}],
    "usage": {"prompt_tokens": 21, "completion_tokens": 5},
}
ANTHROPIC_OK = {
    "model": "claude-3-5-haiku-latest",
    "content": [{"type": "thinking", "thinking": "..."}, {"type": "text", "text": "Ships tomorrow."}],
    "usage": {"input_tokens": 30, "output_tokens": 4},
}


@pytest.mark.parametrize("provider_type", list(ProviderType))
def test_provider_contract(provider_type):
    provider = build_provider(provider_type=provider_type, name="p", config={"api_key": "x"})
    assert provider.provider_type == provider_type.value
    assert hasattr(provider, "validate_config")
    assert hasattr(provider, "estimate_cost")
    assert hasattr(provider, "handle_error")


@pytest.mark.parametrize("provider_type", list(ProviderType))
def test_missing_api_key_is_rejected(provider_type):
    with pytest.raises(ProviderError):
        build_provider(provider_type=provider_type, name="p", config={})


def test_supported_provider_types():
    assert list_supported_provider_types() == ["OpenAI", "Anthropic"]


def test_openai_request_and_usage():
    transport = _transport((200, OPENAI_OK))
    provider = OpenAIProvider("openai", {"api_key": "sk-test"}, transport=transport)

    reply = provider.call(Prompt(message="Where is my order?", system="Be brief.", max_tokens=120))

    assert reply.text == "Ships tomorrow."
    assert (reply.tokens_in, reply.tokens_out) == (21, 5)
    request = transport.seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["max_tokens"] == 120
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert body["messages"][-1] == {"role": "user", "content": "Where is my order?"}


def test_anthropic_picks_first_text_block():
    transport = _transport((200, ANTHROPIC_OK))
    provider = AnthropicProvider("anthropic", {"api_key": "ak-test"}, transport=transport)

    reply = provider.call(Prompt(message="hi", system="Be brief."))

    assert reply.text == "Ships tomorrow."
    assert (reply.tokens_in, reply.tokens_out) == (30, 4)
    request = transport.seen[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "ak-test"
    assert json.loads(request.content)["system"] == "Be brief."


def test_missing_usage_leaves_token_counts_empty():
    body = {"choices": [{"message": {"content": "ok"}}]}
    provider = OpenAIProvider("openai", {"api_key": "k"}, transport=_transport((200, body)))
    reply = provider.call(Prompt(message="hi"))
    assert reply.tokens_in is None
    assert reply.tokens_out is None


def test_transient_errors_are_retried():
    transport = _transport((429, {"error": "slow down"}), (200, OPENAI_OK))
    provider = OpenAIProvider("openai", {"api_key": "k"}, transport=transport)

    assert provider.call(Prompt(message="hi")).text == "Ships tomorrow."
    assert len(transport.seen) == 2


def test_retries_stop_after_three_attempts():
    transport = _transport((503, {"error": "down"}))
    provider = OpenAIProvider("openai", {"api_key": "k"}, transport=transport)

    with pytest.raises(ProviderError) as excinfo:
        provider.call(Prompt(message="hi"))
    assert excinfo.value.transient
    assert len(transport.seen) == 3


def test_client_errors_fail_fast():
    transport = _transport((400, {"error": "bad request"}))
    provider = AnthropicProvider("anthropic", {"api_key": "k"}, transport=transport)

    with pytest.raises(ProviderError) as excinfo:
        provider.call(Prompt(message="hi"))
    assert not excinfo.value.transient
    assert "400" in str(excinfo.value)
    assert len(transport.seen) == 1


def test_malformed_body_is_a_provider_error():
    provider = OpenAIProvider("openai", {"api_key": "k"}, transport=_transport((200, {"choices": []})))
    with pytest.raises(ProviderError):
        provider.call(Prompt(message="hi"))


def test_estimate_cost_uses_model_pricing():
    provider = OpenAIProvider(
        "openai",
        {
            "api_key": "k",
            "default_model": "gpt-4o-mini",
            "models": {"gpt-4o-mini": {"cost_per_1m_input": 0.15, "cost_per_1m_output": 0.6}},
        },
    )
    assert provider.estimate_cost(1_000_000, 1_000_000) == pytest.approx(0.75)
    assert OpenAIProvider("openai", {"api_key": "k"}).estimate_cost(1000, 1000) == 0.0


def test_build_reply_provider_reads_keys_from_settings():
    settings = dataclasses.replace(get_settings(), anthropic_api_key="ak-env")
    ai_settings = SimpleNamespace(provider_type="Anthropic", model="claude-3-5-haiku-latest")

    provider = build_reply_provider(ai_settings, settings)

    assert isinstance(provider, AnthropicProvider)
    assert provider.config["api_key"] == "ak-env"
    assert provider.config["default_model"] == "claude-3-5-haiku-latest"
