"""Tests for the provider abstraction and stream channel."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, AsyncIterator
from unittest.mock import patch

import pytest

from deepsearch import llm_client
from deepsearch.errors import ProviderNotConfiguredError, UpstreamProviderError
from deepsearch.llm_client import (
    AnthropicProvider,
    GeminiProvider,
    LLMProvider,
    LLMResponse,
    LLMStream,
    OpenAICompatibleProvider,
    ProviderId,
    StreamFrame,
    Usage,
    estimate_tokens,
)


class FakeProvider(LLMProvider):
    def __init__(self, provider_id=ProviderId.OPENAI, *, frames=None, error=None, delay=0.0):
        super().__init__("key", "fake-model")
        self.id = provider_id
        self.frames = frames or []
        self.error = error
        self.delay = delay
        self.closed = 0
        self.calls = 0

    async def complete(self, messages, temperature):
        self.calls += 1
        if self.error:
            raise self.error
        return LLMResponse(content="hello world", provider=self.id.value, model=self.model)

    async def open_stream(self, messages, temperature):
        self.calls += 1
        if self.error:
            raise self.error
        return object()

    async def stream_parser(self, raw: Any) -> AsyncIterator[StreamFrame]:
        for frame in self.frames:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield frame

    async def close_raw(self, raw):
        self.closed += 1


MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "question"}]


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcdefgh") == 2
    assert estimate_tokens("abcdefghi") == 3


def test_unknown_provider_is_not_configured():
    with pytest.raises(ProviderNotConfiguredError):
        llm_client.get_provider("not-a-provider")


def test_missing_key_is_not_configured():
    with patch.object(llm_client.settings, "grok_api_key", ""):
        with pytest.raises(ProviderNotConfiguredError) as exc:
            llm_client.get_provider("grok")
    assert "GROK_API_KEY" in str(exc.value)


def test_configured_provider_builds_matching_implementation():
    with patch.object(llm_client.settings, "anthropic_api_key", "sk-test"), patch.object(
        llm_client.settings, "gemini_api_key", "g-test"
    ), patch.object(llm_client.settings, "deepseek_api_key", "d-test"):
        assert isinstance(llm_client.get_provider("anthropic"), AnthropicProvider)
        assert isinstance(llm_client.get_provider("gemini"), GeminiProvider)
        deepseek = llm_client.get_provider("deepseek")
        assert isinstance(deepseek, OpenAICompatibleProvider)
        assert deepseek.id is ProviderId.DEEPSEEK


def test_reasoning_models_omit_temperature():
    provider = OpenAICompatibleProvider(ProviderId.OPENAI, "k", "o3-mini")
    assert "temperature" not in provider._request_kwargs(MESSAGES, 0.3)
    provider = OpenAICompatibleProvider(ProviderId.OPENAI, "k", "gpt-4.1-mini")
    assert provider._request_kwargs(MESSAGES, 0.3)["temperature"] == 0.3


@pytest.mark.asyncio
async def test_complete_estimates_usage_when_provider_omits_it():
    provider = FakeProvider()
    with patch.object(llm_client, "get_provider", return_value=provider):
        response = await llm_client.complete_text(MESSAGES, 0.5)
    assert response.content == "hello world"
    assert response.usage == Usage(input_tokens=estimate_tokens("sys") + estimate_tokens("question"), output_tokens=3)


@pytest.mark.asyncio
async def test_upstream_error_falls_back_once():
    primary = FakeProvider(ProviderId.OPENAI, error=UpstreamProviderError("openai", "503"))
    secondary = FakeProvider(ProviderId.ANTHROPIC)
    with patch.object(llm_client, "get_provider", side_effect=lambda name=None: secondary if name == "anthropic" else primary), patch.object(
        llm_client.settings, "fallback_llm_provider", "anthropic"
    ):
        response = await llm_client.complete_text(MESSAGES, 0.5)
    assert response.provider == "anthropic"
    assert primary.calls == 1
    assert secondary.calls == 1


@pytest.mark.asyncio
async def test_upstream_error_without_fallback_propagates():
    primary = FakeProvider(error=UpstreamProviderError("openai", "503"))
    with patch.object(llm_client, "get_provider", return_value=primary), patch.object(
        llm_client.settings, "fallback_llm_provider", ""
    ):
        with pytest.raises(UpstreamProviderError):
            await llm_client.complete_text(MESSAGES, 0.5)


@pytest.mark.asyncio
async def test_configuration_error_is_not_retried():
    primary = FakeProvider(error=ProviderNotConfiguredError("openai", "credentials rejected"))
    secondary = FakeProvider(ProviderId.ANTHROPIC)
    with patch.object(llm_client, "get_provider", side_effect=lambda name=None: secondary if name == "anthropic" else primary), patch.object(
        llm_client.settings, "fallback_llm_provider", "anthropic"
    ):
        with pytest.raises(ProviderNotConfiguredError):
            await llm_client.complete_text(MESSAGES, 0.5)
    assert secondary.calls == 0


@pytest.mark.asyncio
async def test_stream_yields_content_then_done_with_reported_usage():
    provider = FakeProvider(
        frames=[
            StreamFrame(type="content", text="Hel"),
            StreamFrame(type="content", text="lo"),
            StreamFrame(type="usage", usage=Usage(10, 2)),
        ]
    )
    stream = LLMStream(provider, object(), caller="test")
    frames = [frame async for frame in stream]

    assert [f.type for f in frames] == ["content", "content", "usage", "done"]
    assert stream.text == "Hello"
    assert frames[-1].usage == Usage(10, 2)
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_stream_done_frame_estimates_usage_when_missing():
    provider = FakeProvider(frames=[StreamFrame(type="content", text="abcdefgh")])
    stream = LLMStream(provider, object(), caller="test", prompt_tokens_estimate=7)
    frames = [frame async for frame in stream]
    assert frames[-1].usage == Usage(7, 2)


@pytest.mark.asyncio
async def test_stream_idle_timeout_raises_upstream_error_and_closes():
    provider = FakeProvider(frames=[StreamFrame(type="content", text="x")], delay=0.2)
    stream = LLMStream(provider, object(), caller="test", idle_timeout=0.01)
    with pytest.raises(UpstreamProviderError, match="stalled"):
        async for _ in stream:
            pass
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_stream_aclose_is_idempotent():
    provider = FakeProvider(frames=[StreamFrame(type="content", text="x")])
    stream = LLMStream(provider, object(), caller="test")
    await stream.aclose()
    await stream.aclose()
    assert provider.closed == 1
    assert [frame async for frame in stream] == []


@pytest.mark.asyncio
async def test_openai_stream_parser_decodes_chunks():
    provider = OpenAICompatibleProvider(ProviderId.OPENAI, "k", "gpt-4.1-mini")

    async def chunks():
        yield SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=SimpleNamespace(content="Hi"))])
        yield SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=SimpleNamespace(content=None))])
        yield SimpleNamespace(usage=SimpleNamespace(prompt_tokens=5, completion_tokens=1), choices=[])

    frames = [frame async for frame in provider.stream_parser(chunks())]
    assert frames == [StreamFrame(type="content", text="Hi"), StreamFrame(type="usage", usage=Usage(5, 1))]


@pytest.mark.asyncio
async def test_anthropic_stream_parser_collects_usage_from_start_and_delta():
    provider = AnthropicProvider("k", "claude-test")

    async def events():
        yield SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=12)))
        yield SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text="Hey"))
        yield SimpleNamespace(type="message_delta", usage=SimpleNamespace(output_tokens=3))

    frames = [frame async for frame in provider.stream_parser(events())]
    assert frames == [StreamFrame(type="content", text="Hey"), StreamFrame(type="usage", usage=Usage(12, 3))]


def test_gemini_error_mapping():
    provider = GeminiProvider("k", "gemini-2.0-flash", "https://example.test/v1beta")
    assert isinstance(provider._error_for(403, '{"error": {"message": "denied"}}'), ProviderNotConfiguredError)
    assert isinstance(provider._error_for(400, '{"error": {"message": "API key not valid"}}'), ProviderNotConfiguredError)
    error = provider._error_for(503, '{"error": {"message": "overloaded"}}')
    assert isinstance(error, UpstreamProviderError)
    assert "overloaded" in str(error)


def test_gemini_text_and_usage_extraction():
    payload = {
        "candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}],
        "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
    }
    assert GeminiProvider._text(payload) == "ab"
    assert GeminiProvider._usage(payload) == Usage(4, 2)
    assert GeminiProvider._text({}) == ""
