"""Tests for the OpenAI completion provider using httpx MockTransport."""

import json

import httpx
import pytest

from capturebot.core.settings import Settings
from capturebot.llm.provider import (
    CompletionError,
    NoLLMProvider,
    OpenAICompletionProvider,
    calculate_cost,
    get_completion_provider,
    parse_json_response,
)
from capturebot.merger.advisor import MergeCandidate, suggest_merges
from capturebot.trender.narrator import narrate_trends
from capturebot.trender.signals import VelocitySignal


def _provider(handler) -> OpenAICompletionProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompletionProvider(api_key="sk-test", client=client)


async def test_complete_returns_text_and_cost():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['auth'] = request.headers['authorization']
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={
            "choices": [{"message": {"content": '{"trends": []}'}}],
            "usage": {"prompt_tokens": 1_000_000, "completion_tokens": 1_000_000},
        })

    provider = _provider(handler)
    result = await provider.complete("hello", temperature=0.3, max_tokens=50)

    assert result.text == '{"trends": []}'
    assert result.cost == pytest.approx(0.75)
    assert seen['auth'] == "Bearer sk-test"
    assert seen['body']['model'] == "gpt-4o-mini"
    assert seen['body']['temperature'] == 0.3
    assert seen['body']['max_tokens'] == 50
    assert seen['body']['messages'] == [{"role": "user", "content": "hello"}]
    await provider.client.aclose()


async def test_http_error_status_raises():
    provider = _provider(lambda request: httpx.Response(500, text="oops"))
    with pytest.raises(CompletionError):
        await provider.complete("hello")
    await provider.client.aclose()


async def test_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = _provider(handler)
    with pytest.raises(CompletionError):
        await provider.complete("hello")
    await provider.client.aclose()


async def test_empty_content_raises():
    provider = _provider(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(CompletionError):
        await provider.complete("hello")
    await provider.client.aclose()


@pytest.mark.parametrize("body", [
    [],
    {"choices": None},
    {"choices": ["text"]},
    {"choices": [{"message": None}]},
    {"choices": [{"message": {"content": None}}]},
    {"choices": [{"message": {"content": {"merges": []}}}]},
    {"choices": [{"message": {"content": ["a", "b"]}}]},
])
async def test_malformed_body_raises_completion_error(body):
    provider = _provider(lambda request: httpx.Response(200, json=body))
    with pytest.raises(CompletionError):
        await provider.complete("hello")
    await provider.client.aclose()


async def test_non_dict_usage_costs_nothing():
    provider = _provider(lambda request: httpx.Response(200, json={
        "choices": [{"message": {"content": "ok"}}],
        "usage": "n/a",
    }))
    result = await provider.complete("hello")
    assert result.text == "ok"
    assert result.cost == 0.0
    await provider.client.aclose()


async def test_malformed_body_means_no_narration_or_advice():
    body = {"choices": [{"message": None}]}
    provider = _provider(lambda request: httpx.Response(200, json=body))

    assert await narrate_trends([VelocitySignal("c-1", "AI", 4)], provider) is None

    body = {"choices": [{"message": {"content": {"merges": []}}}]}
    candidates = [MergeCandidate(id="c-1", name="AI"), MergeCandidate(id="c-2", name="ML")]
    assert await suggest_merges(candidates, provider) is None
    await provider.client.aclose()


def test_calculate_cost_handles_missing_usage():
    assert calculate_cost({}) == 0.0
    assert calculate_cost({"prompt_tokens": 1000}) == pytest.approx(0.00015)


def test_parse_json_response_strips_fences():
    assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(CompletionError):
        parse_json_response("nope")


def test_provider_factory():
    assert isinstance(get_completion_provider(Settings(openai_api_key=None)), NoLLMProvider)
    assert not NoLLMProvider().enabled

    provider = get_completion_provider(Settings(openai_api_key="sk-x", openai_model="gpt-4o-mini"))
    assert isinstance(provider, OpenAICompletionProvider)
    assert provider.enabled
