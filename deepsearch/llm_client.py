"""Uniform call interface over interchangeable LLM providers.

Each provider owns its request shape and its stream decoder. ``call_llm`` resolves a
provider, applies timeouts, and falls back once to the configured secondary provider
on a transient upstream failure. Selection failures raise ``ProviderNotConfiguredError``
and are never retried.
"""
from __future__ import annotations

import asyncio
import json
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Literal, cast

import anthropic
import httpx
from openai import AsyncOpenAI
import openai

from deepsearch.config import settings
from deepsearch.errors import ProviderNotConfiguredError, UpstreamProviderError
from deepsearch.services import logger as log_service


class ProviderId(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    GROK = "grok"
    OPENROUTER = "openrouter"


# provider -> (api key field, model field, base url field)
PROVIDER_SETTINGS: dict[ProviderId, tuple[str, str, str | None]] = {
    ProviderId.OPENAI: ("openai_api_key", "openai_model", "openai_base_url"),
    ProviderId.ANTHROPIC: ("anthropic_api_key", "anthropic_model", None),
    ProviderId.GEMINI: ("gemini_api_key", "gemini_model", "gemini_base_url"),
    ProviderId.DEEPSEEK: ("deepseek_api_key", "deepseek_model", "deepseek_base_url"),
    ProviderId.GROK: ("grok_api_key", "grok_model", "grok_base_url"),
    ProviderId.OPENROUTER: ("openrouter_api_key", "openrouter_model", "openrouter_base_url"),
}


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class StreamFrame:
    type: Literal["content", "usage", "done"]
    text: str = ""
    usage: Usage | None = None


@dataclass(slots=True)
class LLMResponse:
    content: str
    provider: str
    model: str
    usage: Usage | None = None


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token) for providers that omit usage."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_messages_tokens(messages: list[dict[str, str]]) -> int:
    return sum(estimate_tokens(m.get("content", "")) for m in messages)


def _split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return "\n\n".join(system_parts), rest


class LLMProvider(ABC):
    id: ProviderId

    def __init__(self, api_key: str, model: str, base_url: str | None = None, *, timeout: float = 90.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout

    @abstractmethod
    async def complete(self, messages: list[dict[str, str]], temperature: float) -> LLMResponse:
        ...

    @abstractmethod
    async def open_stream(self, messages: list[dict[str, str]], temperature: float) -> Any:
        """Start a streamed request and return the provider's raw handle."""

    @abstractmethod
    def stream_parser(self, raw: Any) -> AsyncIterator[StreamFrame]:
        """Decode a raw handle into content and usage frames. Finite, not restartable."""

    @abstractmethod
    async def close_raw(self, raw: Any) -> None:
        """Abort or release the raw handle."""


class OpenAICompatibleProvider(LLMProvider):
    """OpenAI chat completions and the gateways that speak the same protocol."""

    def __init__(self, provider_id: ProviderId, api_key: str, model: str, base_url: str | None = None, *, timeout: float = 90.0):
        super().__init__(api_key, model, base_url, timeout=timeout)
        self.id = provider_id
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def _request_kwargs(self, messages: list[dict[str, str]], temperature: float) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        # Reasoning models reject an explicit temperature.
        lowered = self.model.lower().rsplit("/", 1)[-1]
        if not lowered.startswith(("o1", "o3", "o4", "gpt-5")):
            kwargs["temperature"] = temperature
        return kwargs

    def _wrap(self, exc: Exception) -> Exception:
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return ProviderNotConfiguredError(self.id.value, "credentials rejected")
        if isinstance(exc, openai.NotFoundError):
            return ProviderNotConfiguredError(self.id.value, f"unknown model '{self.model}'")
        status = getattr(exc, "status_code", None)
        return UpstreamProviderError(self.id.value, str(exc), status=status)

    async def complete(self, messages: list[dict[str, str]], temperature: float) -> LLMResponse:
        try:
            response = await self._client.chat.completions.create(**self._request_kwargs(messages, temperature))
        except openai.OpenAIError as e:
            raise self._wrap(e) from e
        choices = getattr(response, "choices", None) or []
        content = (choices[0].message.content or "") if choices else ""
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=content,
            provider=self.id.value,
            model=self.model,
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )
            if usage
            else None,
        )

    async def open_stream(self, messages: list[dict[str, str]], temperature: float) -> Any:
        try:
            return await self._client.chat.completions.create(
                **self._request_kwargs(messages, temperature),
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.OpenAIError as e:
            raise self._wrap(e) from e

    async def stream_parser(self, raw: Any) -> AsyncIterator[StreamFrame]:
        async for chunk in raw:
            usage = getattr(chunk, "usage", None)
            if usage:
                yield StreamFrame(
                    type="usage",
                    usage=Usage(
                        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                    ),
                )
            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            text = getattr(delta, "content", None) if delta else None
            if text:
                yield StreamFrame(type="content", text=text)

    async def close_raw(self, raw: Any) -> None:
        await raw.close()


class AnthropicProvider(LLMProvider):
    id = ProviderId.ANTHROPIC

    def __init__(self, api_key: str, model: str, base_url: str | None = None, *, timeout: float = 90.0):
        super().__init__(api_key, model, base_url, timeout=timeout)
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)

    def _request_kwargs(self, messages: list[dict[str, str]], temperature: float) -> dict[str, Any]:
        system, rest = _split_system(messages)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": settings.anthropic_max_tokens,
            "messages": rest,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    def _wrap(self, exc: Exception) -> Exception:
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return ProviderNotConfiguredError(self.id.value, "credentials rejected")
        if isinstance(exc, anthropic.NotFoundError):
            return ProviderNotConfiguredError(self.id.value, f"unknown model '{self.model}'")
        status = getattr(exc, "status_code", None)
        return UpstreamProviderError(self.id.value, str(exc), status=status)

    async def complete(self, messages: list[dict[str, str]], temperature: float) -> LLMResponse:
        try:
            response = await self._client.messages.create(**self._request_kwargs(messages, temperature))
        except anthropic.AnthropicError as e:
            raise self._wrap(e) from e
        text = "".join(
            getattr(block, "text", "")
            for block in (response.content or [])
            if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=text,
            provider=self.id.value,
            model=self.model,
            usage=Usage(
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            )
            if usage
            else None,
        )

    async def open_stream(self, messages: list[dict[str, str]], temperature: float) -> Any:
        try:
            return await self._client.messages.create(
                **self._request_kwargs(messages, temperature), stream=True
            )
        except anthropic.AnthropicError as e:
            raise self._wrap(e) from e

    async def stream_parser(self, raw: Any) -> AsyncIterator[StreamFrame]:
        input_tokens = 0
        output_tokens = 0
        saw_usage = False
        async for event in raw:
            etype = getattr(event, "type", None)
            if etype == "message_start":
                usage = getattr(getattr(event, "message", None), "usage", None)
                if usage:
                    saw_usage = True
                    input_tokens = getattr(usage, "input_tokens", 0) or 0
            elif etype == "content_block_delta":
                delta = getattr(event, "delta", None)
                if getattr(delta, "type", None) == "text_delta" and delta.text:
                    yield StreamFrame(type="content", text=delta.text)
            elif etype == "message_delta":
                usage = getattr(event, "usage", None)
                if usage:
                    saw_usage = True
                    output_tokens = getattr(usage, "output_tokens", 0) or 0
        if saw_usage:
            yield StreamFrame(type="usage", usage=Usage(input_tokens, output_tokens))

    async def close_raw(self, raw: Any) -> None:
        await raw.close()


@dataclass
class _GeminiRawStream:
    client: httpx.AsyncClient
    response: httpx.Response


class GeminiProvider(LLMProvider):
    id = ProviderId.GEMINI

    def _body(self, messages: list[dict[str, str]], temperature: float) -> dict[str, Any]:
        system, rest = _split_system(messages)
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.get("role") == "assistant" else "user",
                    "parts": [{"text": m.get("content", "")}],
                }
                for m in rest
            ],
            "generationConfig": {"temperature": temperature},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return body

    def _url(self, method: str) -> str:
        return f"{self.base_url.rstrip('/')}/models/{self.model}:{method}"

    def _error_for(self, status: int, body: str) -> Exception:
        message = body[:500]
        try:
            payload = json.loads(body)
            message = payload.get("error", {}).get("message") or message
        except (ValueError, AttributeError):
            pass
        if status in (401, 403) or (status == 400 and "api key" in message.lower()):
            return ProviderNotConfiguredError(self.id.value, message)
        return UpstreamProviderError(self.id.value, f"HTTP {status}: {message}", status=status)

    @staticmethod
    def _usage(payload: dict[str, Any]) -> Usage | None:
        meta = payload.get("usageMetadata")
        if not isinstance(meta, dict):
            return None
        return Usage(
            input_tokens=int(meta.get("promptTokenCount", 0) or 0),
            output_tokens=int(meta.get("candidatesTokenCount", 0) or 0),
        )

    @staticmethod
    def _text(payload: dict[str, Any]) -> str:
        candidates = payload.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))

    async def complete(self, messages: list[dict[str, str]], temperature: float) -> LLMResponse:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self._url("generateContent"),
                    params={"key": self.api_key},
                    json=self._body(messages, temperature),
                )
        except httpx.HTTPError as e:
            raise UpstreamProviderError(self.id.value, str(e)) from e
        if response.status_code >= 400:
            raise self._error_for(response.status_code, response.text)
        payload = response.json()
        return LLMResponse(
            content=self._text(payload),
            provider=self.id.value,
            model=self.model,
            usage=self._usage(payload),
        )

    async def open_stream(self, messages: list[dict[str, str]], temperature: float) -> _GeminiRawStream:
        client = httpx.AsyncClient(timeout=self.timeout)
        request = client.build_request(
            "POST",
            self._url("streamGenerateContent"),
            params={"alt": "sse", "key": self.api_key},
            json=self._body(messages, temperature),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise UpstreamProviderError(self.id.value, str(e)) from e
        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            await client.aclose()
            raise self._error_for(response.status_code, body)
        return _GeminiRawStream(client=client, response=response)

    async def stream_parser(self, raw: _GeminiRawStream) -> AsyncIterator[StreamFrame]:
        last_usage: Usage | None = None
        async for line in raw.response.aiter_lines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data:
                continue
            try:
                payload = json.loads(data)
            except ValueError:
                continue
            text = self._text(payload)
            if text:
                yield StreamFrame(type="content", text=text)
            last_usage = self._usage(payload) or last_usage
        if last_usage is not None:
            yield StreamFrame(type="usage", usage=last_usage)

    async def close_raw(self, raw: _GeminiRawStream) -> None:
        await raw.response.aclose()
        await raw.client.aclose()


def _build(provider_id: ProviderId, api_key: str, model: str, base_url: str | None) -> LLMProvider:
    timeout = settings.llm_timeout_seconds
    if provider_id is ProviderId.ANTHROPIC:
        return AnthropicProvider(api_key, model, base_url, timeout=timeout)
    if provider_id is ProviderId.GEMINI:
        return GeminiProvider(api_key, model, base_url, timeout=timeout)
    if provider_id in (ProviderId.OPENAI, ProviderId.DEEPSEEK, ProviderId.GROK, ProviderId.OPENROUTER):
        return OpenAICompatibleProvider(provider_id, api_key, model, base_url, timeout=timeout)
    raise ProviderNotConfiguredError(provider_id.value, "no implementation")


def resolve_provider_id(provider: str | None) -> ProviderId:
    name = (provider or settings.default_llm_provider or "").lower().strip()
    try:
        return ProviderId(name)
    except ValueError:
        raise ProviderNotConfiguredError(name or "<empty>", "unknown provider id") from None


_providers: dict[tuple[ProviderId, str, str, str | None], LLMProvider] = {}


def get_provider(provider: str | None = None) -> LLMProvider:
    """Resolve a configured provider, failing fast on unknown ids or missing keys."""
    provider_id = resolve_provider_id(provider)
    key_field, model_field, url_field = PROVIDER_SETTINGS[provider_id]
    api_key = getattr(settings, key_field, "")
    if not api_key:
        raise ProviderNotConfiguredError(provider_id.value, f"{key_field.upper()} is not set")
    model = getattr(settings, model_field)
    base_url = getattr(settings, url_field) if url_field else None
    cache_key = (provider_id, api_key, model, base_url)
    if cache_key not in _providers:
        _providers[cache_key] = _build(provider_id, api_key, model, base_url)
    return _providers[cache_key]


def configured_providers() -> list[str]:
    return [
        provider_id.value
        for provider_id, (key_field, _, _) in PROVIDER_SETTINGS.items()
        if getattr(settings, key_field, "")
    ]


class LLMStream:
    """Cancellable channel of frames from one streamed provider call.

    Consumers iterate until the terminal ``done`` frame. ``aclose()`` aborts the
    upstream request; it is safe to call more than once.
    """

    def __init__(
        self,
        provider: LLMProvider,
        raw: Any,
        *,
        caller: str,
        prompt_tokens_estimate: int = 0,
        idle_timeout: float | None = None,
    ):
        self.provider = provider
        self.raw = raw
        self.caller = caller
        self.idle_timeout = idle_timeout
        self.usage: Usage | None = None
        self.text = ""
        self._prompt_tokens_estimate = prompt_tokens_estimate
        self._frames = provider.stream_parser(raw)
        self._closed = False
        self._finished = False
        self._t0 = time.monotonic()

    @property
    def provider_name(self) -> str:
        return self.provider.id.value

    async def __aenter__(self) -> "LLMStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __aiter__(self) -> "LLMStream":
        return self

    async def __anext__(self) -> StreamFrame:
        if self._finished or self._closed:
            raise StopAsyncIteration
        try:
            if self.idle_timeout:
                frame = await asyncio.wait_for(self._frames.__anext__(), timeout=self.idle_timeout)
            else:
                frame = await self._frames.__anext__()
        except StopAsyncIteration:
            self._finished = True
            self._log_completion()
            await self.aclose()
            return StreamFrame(type="done", usage=self.final_usage)
        except asyncio.TimeoutError:
            await self.aclose()
            self._log_completion(error="stream idle timeout")
            raise UpstreamProviderError(self.provider_name, "stream stalled") from None
        except (UpstreamProviderError, ProviderNotConfiguredError):
            await self.aclose()
            raise
        except (openai.OpenAIError, anthropic.AnthropicError, httpx.HTTPError) as e:
            await self.aclose()
            self._log_completion(error=str(e))
            raise UpstreamProviderError(self.provider_name, str(e)) from e

        if frame.type == "content":
            self.text += frame.text
        elif frame.type == "usage":
            self.usage = frame.usage
        return frame

    @property
    def final_usage(self) -> Usage:
        if self.usage is not None:
            return self.usage
        return Usage(
            input_tokens=self._prompt_tokens_estimate,
            output_tokens=estimate_tokens(self.text),
        )

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._frames.aclose()
        except RuntimeError:
            # Parser still suspended in a cancelled read; closing the raw handle aborts it.
            pass
        finally:
            try:
                await self.provider.close_raw(self.raw)
            except Exception as e:
                log_service.logger.debug(f"Closing {self.provider_name} stream failed: {e}")

    def _log_completion(self, error: str | None = None) -> None:
        usage = self.final_usage
        log_service.log_llm_call(
            provider=self.provider_name,
            model=self.provider.model,
            caller=self.caller,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - self._t0) * 1000),
            status="error" if error else "success",
            error=error,
            estimated=self.usage is None,
        )


async def _complete_once(
    provider: LLMProvider,
    messages: list[dict[str, str]],
    temperature: float,
    caller: str,
) -> LLMResponse:
    t0 = time.monotonic()
    try:
        response = await asyncio.wait_for(
            provider.complete(messages, temperature), timeout=settings.llm_timeout_seconds
        )
    except asyncio.TimeoutError:
        error = UpstreamProviderError(provider.id.value, "request timed out")
        log_service.log_llm_call(
            provider=provider.id.value,
            model=provider.model,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error",
            error=str(error),
        )
        raise error from None
    except UpstreamProviderError as e:
        log_service.log_llm_call(
            provider=provider.id.value,
            model=provider.model,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error",
            error=str(e),
        )
        raise

    usage = response.usage
    estimated = usage is None
    if usage is None:
        usage = Usage(estimate_messages_tokens(messages), estimate_tokens(response.content))
        response.usage = usage
    log_service.log_llm_call(
        provider=provider.id.value,
        model=provider.model,
        caller=caller,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        duration_ms=int((time.monotonic() - t0) * 1000),
        estimated=estimated,
    )
    return response


async def _open_stream_once(
    provider: LLMProvider,
    messages: list[dict[str, str]],
    temperature: float,
    caller: str,
) -> LLMStream:
    try:
        raw = await asyncio.wait_for(
            provider.open_stream(messages, temperature), timeout=settings.llm_timeout_seconds
        )
    except asyncio.TimeoutError:
        raise UpstreamProviderError(provider.id.value, "stream open timed out") from None
    return LLMStream(
        provider,
        raw,
        caller=caller,
        prompt_tokens_estimate=estimate_messages_tokens(messages),
        idle_timeout=settings.llm_stream_idle_timeout_seconds,
    )


def _fallback_for(primary: LLMProvider) -> LLMProvider | None:
    name = (settings.fallback_llm_provider or "").strip().lower()
    if not name or name == primary.id.value:
        return None
    try:
        return get_provider(name)
    except ProviderNotConfiguredError as e:
        log_service.logger.warning(f"Fallback provider unavailable: {e}")
        return None


async def call_llm(
    messages: list[dict[str, str]],
    temperature: float = 0.7,
    *,
    stream: bool = False,
    provider: str | None = None,
    caller: str = "llm",
) -> LLMResponse | LLMStream:
    """Complete or stream a chat request on the selected provider.

    A transient ``UpstreamProviderError`` is retried once on the fallback provider.
    """
    primary = get_provider(provider)
    attempt = _open_stream_once if stream else _complete_once
    try:
        return await attempt(primary, messages, temperature, caller)
    except UpstreamProviderError as e:
        fallback = _fallback_for(primary)
        if fallback is None:
            raise
        log_service.log_event(
            event_type="llm_provider_fallback",
            message=f"{primary.id.value} failed, retrying on {fallback.id.value}",
            caller=caller,
            error=str(e),
        )
        return await attempt(fallback, messages, temperature, caller)


async def complete_text(
    messages: list[dict[str, str]],
    temperature: float,
    *,
    provider: str | None = None,
    caller: str = "llm",
) -> LLMResponse:
    response = await call_llm(messages, temperature, stream=False, provider=provider, caller=caller)
    return cast(LLMResponse, response)


async def open_stream(
    messages: list[dict[str, str]],
    temperature: float,
    *,
    provider: str | None = None,
    caller: str = "llm",
) -> LLMStream:
    response = await call_llm(messages, temperature, stream=True, provider=provider, caller=caller)
    return cast(LLMStream, response)
