# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Stage Adapters

One adapter per upstream provider, all producing the same StageEvent
sequence for a single exchange:
- DeepSeek (reasoning_content, prompt cache hit/miss usage)
- OpenAI-compatible chat completions (vLLM, OpenRouter, Ollama /v1, ...)
- Anthropic Messages API

Each adapter supports a batched mode (one non-streaming request, coalesced
events) and a streaming mode (SSE, one event per upstream unit). Transport
and payload failures are yielded as a terminal `failed` event; they are
never raised out of `run`. Cancellation always propagates.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx

from deliberate_core import (
    ConfigurationError,
    UpstreamError,
    UpstreamProtocolError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
)

from .models import AdapterMode, StageEvent, StageRequest, UsageMetrics
from .settings import StageSettings

logger = logging.getLogger(__name__)


# ============================================================
# HELPERS
# ============================================================


def _optional_int(value: Any) -> int | None:
    """Coerce a usage counter, keeping absence as None."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise UpstreamProtocolError(f"Usage counter is not numeric: {value!r}")
    return int(value)


def _object(value: Any, what: str) -> dict[str, Any]:
    """Treat an absent nested object as empty; reject any other shape."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise UpstreamProtocolError(f"{what} is not an object: {type(value).__name__}")
    return value


def _text(value: Any, what: str) -> str | None:
    """Return a text field, keeping absence as None; reject non-strings."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise UpstreamProtocolError(f"{what} is not a string: {type(value).__name__}")
    return value


def _sse_data(line: str) -> str | None:
    """Return the payload of an SSE `data:` line, or None for other lines."""
    if not line.startswith("data:"):
        return None
    data = line[5:]
    if data.startswith(" "):
        data = data[1:]
    return data


# ============================================================
# ABSTRACT ADAPTER
# ============================================================


class StageAdapter(ABC):
    """
    Abstract base for stage adapters.

    Subclasses supply the payload shape, headers and frame parsing; the
    base class owns the HTTP exchange and error mapping.

    Usage:
        adapter = DeepSeekAdapter(model="deepseek-reasoner")
        async for event in adapter.run(request, AdapterMode.STREAMING):
            ...
        await adapter.close()
    """

    provider: ClassVar[str] = ""
    default_base_url: ClassVar[str] = ""
    endpoint: ClassVar[str] = ""

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.base_url = base_url or self.default_base_url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        """Provider identifier for logging."""
        return f"{self.provider}:{self.model}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy client initialization."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"content-type": "application/json"},
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # --------------------------------------------------------
    # Provider hooks
    # --------------------------------------------------------

    @abstractmethod
    def _headers(self, credential: str) -> dict[str, str]:
        """Per-request auth headers."""

    @abstractmethod
    def _build_payload(self, request: StageRequest, stream: bool) -> dict[str, Any]:
        """Upstream request body."""

    @abstractmethod
    def _parse_response(self, data: Any) -> list[StageEvent]:
        """Translate a complete (batched) response body, terminal event included."""

    @abstractmethod
    def _new_stream_state(self) -> Any:
        """Fresh per-exchange parser state for streaming mode."""

    @abstractmethod
    def _parse_stream_data(self, data: str, state: Any) -> list[StageEvent]:
        """Translate one SSE data payload; may return a terminal event."""

    def _end_of_stream(self, state: Any) -> list[StageEvent]:
        """Events for a stream that closed without a terminal frame."""
        return [
            StageEvent.failed(
                UpstreamUnavailableError(
                    f"{self.name} stream ended before completion", provider=self.provider
                )
            )
        ]

    # --------------------------------------------------------
    # Exchange
    # --------------------------------------------------------

    async def run(
        self, request: StageRequest, mode: AdapterMode = AdapterMode.STREAMING
    ) -> AsyncIterator[StageEvent]:
        """
        Drive one upstream exchange.

        Args:
            request: Frozen stage request
            mode: Batched (single response) or streaming (SSE)

        Yields:
            StageEvents, ending with exactly one `done` or `failed`
        """
        stream = mode == AdapterMode.STREAMING
        payload = self._build_payload(request, stream=stream)
        headers = self._headers(request.credential)
        client = await self._get_client()

        logger.debug(
            f"Upstream exchange starting: {self.name} mode={mode} "
            f"messages={len(request.messages)}"
        )

        try:
            if stream:
                async with client.stream(
                    "POST", self.endpoint, json=payload, headers=headers
                ) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        yield StageEvent.failed(self._rejected(response.status_code, body))
                        return

                    state = self._new_stream_state()
                    async for line in response.aiter_lines():
                        data = _sse_data(line)
                        if data is None or not data.strip():
                            continue
                        for event in self._parse(self._parse_stream_data, data, state):
                            yield event
                            if event.is_terminal:
                                return

                for event in self._parse(self._end_of_stream, state):
                    yield event
                    if event.is_terminal:
                        return
            else:
                response = await client.post(self.endpoint, json=payload, headers=headers)
                if not response.is_success:
                    yield StageEvent.failed(self._rejected(response.status_code, response.text))
                    return

                try:
                    data = response.json()
                except ValueError as e:
                    raise UpstreamProtocolError(
                        f"{self.name} returned a non-JSON body",
                        provider=self.provider,
                        original_error=e,
                    ) from e

                for event in self._parse(self._parse_response, data):
                    yield event
                    if event.is_terminal:
                        return

        except httpx.TimeoutException as e:
            yield StageEvent.failed(
                UpstreamUnavailableError(
                    f"{self.name} timed out", provider=self.provider, original_error=e
                )
            )
        except httpx.TransportError as e:
            yield StageEvent.failed(
                UpstreamUnavailableError(
                    f"Connection to {self.name} failed", provider=self.provider, original_error=e
                )
            )
        except UpstreamError as e:
            logger.warning(f"Upstream error from {self.name}: {e.message}")
            yield StageEvent.failed(e)

    def _parse(self, hook: Any, *args: Any) -> list[StageEvent]:
        """Run a parse hook, reporting an unexpected payload shape as a protocol error."""
        try:
            return hook(*args)
        except (AttributeError, TypeError, KeyError, ValueError) as e:
            raise UpstreamProtocolError(
                f"Unexpected payload shape from {self.name}",
                provider=self.provider,
                original_error=e,
            ) from e

    def _rejected(self, status: int, body: str) -> UpstreamRejectedError:
        logger.warning(f"{self.name} rejected request with HTTP {status}")
        return UpstreamRejectedError(
            f"{self.name} returned HTTP {status}",
            status=status,
            body=body,
            provider=self.provider,
        )

    def _decode(self, data: str) -> Any:
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise UpstreamProtocolError(
                f"Malformed stream frame from {self.name}",
                provider=self.provider,
                original_error=e,
            ) from e


# ============================================================
# OPENAI-COMPATIBLE ADAPTER
# ============================================================


@dataclass
class _ChatCompletionStreamState:
    model: str | None = None
    usage: dict[str, Any] | None = None
    finish_reason: str | None = None


class OpenAICompatibleAdapter(StageAdapter):
    """
    Chat Completions API adapter.

    Structured reasoning arrives in `reasoning_content` (DeepSeek, vLLM) or
    `reasoning` (OpenRouter); plain content deltas may still carry inline
    <think> tags, which reasoning extraction handles downstream.
    """

    provider = "openai"
    default_base_url = "https://api.openai.com"
    endpoint = "/v1/chat/completions"

    def _headers(self, credential: str) -> dict[str, str]:
        if not credential:
            return {}
        return {"Authorization": f"Bearer {credential}"}

    def _build_payload(self, request: StageRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, **request.options}
        payload["messages"] = request.to_payload_messages()
        payload["stream"] = stream
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _usage(self, usage: Any, model: str | None) -> UsageMetrics:
        if not isinstance(usage, dict):
            raise UpstreamProtocolError(f"Usage from {self.name} is not an object")
        details = _object(usage.get("prompt_tokens_details"), "prompt_tokens_details")
        return UsageMetrics(
            provider=self.provider,
            model=model or self.model,
            input_units=_optional_int(usage.get("prompt_tokens")),
            output_units=_optional_int(usage.get("completion_tokens")),
            cached_input_units=_optional_int(details.get("cached_tokens")),
        )

    @staticmethod
    def _reasoning_of(body: dict[str, Any]) -> str | None:
        reasoning = _text(body.get("reasoning_content"), "reasoning_content")
        return reasoning or _text(body.get("reasoning"), "reasoning")

    def _parse_response(self, data: Any) -> list[StageEvent]:
        """Parse a non-streaming completion."""
        if not isinstance(data, dict):
            raise UpstreamProtocolError(f"Response from {self.name} is not an object")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise UpstreamProtocolError(f"Response from {self.name} has no choices")

        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise UpstreamProtocolError(f"Response from {self.name} has no message")

        events: list[StageEvent] = []
        reasoning = self._reasoning_of(message)
        if reasoning:
            events.append(StageEvent.reasoning_delta(reasoning))
        content = _text(message.get("content"), "message.content")
        if content:
            events.append(StageEvent.content_delta(content))
        if data.get("usage"):
            events.append(StageEvent.usage_report(self._usage(data["usage"], data.get("model"))))
        events.append(StageEvent.done(raw=data))
        return events

    def _new_stream_state(self) -> _ChatCompletionStreamState:
        return _ChatCompletionStreamState()

    def _finish(self, state: _ChatCompletionStreamState) -> list[StageEvent]:
        events: list[StageEvent] = []
        if state.usage:
            events.append(StageEvent.usage_report(self._usage(state.usage, state.model)))
        events.append(StageEvent.done())
        return events

    def _parse_stream_data(self, data: str, state: _ChatCompletionStreamState) -> list[StageEvent]:
        if data.strip() == "[DONE]":
            return self._finish(state)

        chunk = self._decode(data)
        if not isinstance(chunk, dict):
            raise UpstreamProtocolError(f"Stream frame from {self.name} is not an object")

        if "error" in chunk:
            error = chunk["error"] if isinstance(chunk["error"], dict) else {}
            raise UpstreamProtocolError(
                error.get("message") or f"{self.name} reported a stream error",
                provider=self.provider,
            )

        state.model = _text(chunk.get("model"), "model") or state.model
        if chunk.get("usage"):
            state.usage = _object(chunk["usage"], "usage")

        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            raise UpstreamProtocolError(f"Stream frame from {self.name} has invalid choices")

        events: list[StageEvent] = []
        for choice in choices:
            if not isinstance(choice, dict):
                raise UpstreamProtocolError(f"Stream frame from {self.name} has invalid choice")
            if choice.get("index", 0) != 0:
                continue

            delta = _object(choice.get("delta"), "delta")
            reasoning = self._reasoning_of(delta)
            if reasoning:
                events.append(StageEvent.reasoning_delta(reasoning))
            content = _text(delta.get("content"), "delta.content")
            if content:
                events.append(StageEvent.content_delta(content))
            if choice.get("finish_reason"):
                state.finish_reason = choice["finish_reason"]
        return events

    def _end_of_stream(self, state: _ChatCompletionStreamState) -> list[StageEvent]:
        # Some compatible servers close after finish_reason without [DONE]
        if state.finish_reason:
            return self._finish(state)
        return super()._end_of_stream(state)


# ============================================================
# DEEPSEEK ADAPTER
# ============================================================


class DeepSeekAdapter(OpenAICompatibleAdapter):
    """DeepSeek reasoner; reports prompt cache hits in its own usage fields."""

    provider = "deepseek"
    default_base_url = "https://api.deepseek.com"
    endpoint = "/chat/completions"

    def _usage(self, usage: Any, model: str | None) -> UsageMetrics:
        if not isinstance(usage, dict):
            raise UpstreamProtocolError(f"Usage from {self.name} is not an object")
        return UsageMetrics(
            provider=self.provider,
            model=model or self.model,
            input_units=_optional_int(usage.get("prompt_tokens")),
            output_units=_optional_int(usage.get("completion_tokens")),
            cached_input_units=_optional_int(usage.get("prompt_cache_hit_tokens")),
        )


# ============================================================
# ANTHROPIC ADAPTER
# ============================================================


def _block_index(frame: dict[str, Any]) -> int:
    return _optional_int(frame.get("index")) or 0


@dataclass
class _MessagesStreamState:
    model: str | None = None
    usage: dict[str, Any] | None = None


class AnthropicAdapter(StageAdapter):
    """Anthropic Messages API; the system turn is sent as the `system` field."""

    provider = "anthropic"
    default_base_url = "https://api.anthropic.com"
    endpoint = "/v1/messages"
    api_version = "2023-06-01"
    default_max_tokens = 8192

    # Error frames that mean "try later" rather than "bad payload"
    TRANSIENT_ERRORS = frozenset({"overloaded_error", "api_error"})

    def _headers(self, credential: str) -> dict[str, str]:
        headers = {"anthropic-version": self.api_version}
        if credential:
            headers["x-api-key"] = credential
        return headers

    def _build_payload(self, request: StageRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, **request.options}
        payload.setdefault("max_tokens", self.default_max_tokens)
        if request.system_prompt is not None:
            payload["system"] = request.system_prompt
        payload["messages"] = request.to_payload_messages(include_system=False)
        payload["stream"] = stream
        return payload

    def _usage(self, usage: dict[str, Any], model: str | None) -> UsageMetrics:
        input_tokens = _optional_int(usage.get("input_tokens"))
        cache_read = _optional_int(usage.get("cache_read_input_tokens"))
        if input_tokens is not None and cache_read is not None:
            input_tokens += cache_read
        return UsageMetrics(
            provider=self.provider,
            model=model or self.model,
            input_units=input_tokens,
            output_units=_optional_int(usage.get("output_tokens")),
            cached_input_units=cache_read,
            cache_write_units=_optional_int(usage.get("cache_creation_input_tokens")),
        )

    def _error_frame(self, error: Any) -> UpstreamError:
        error = error if isinstance(error, dict) else {}
        error_type = error.get("type", "unknown_error")
        message = error.get("message") or f"{self.name} reported {error_type}"
        if error_type in self.TRANSIENT_ERRORS:
            return UpstreamUnavailableError(message, provider=self.provider)
        return UpstreamProtocolError(message, provider=self.provider)

    def _parse_response(self, data: Any) -> list[StageEvent]:
        """Parse a non-streaming message."""
        if not isinstance(data, dict):
            raise UpstreamProtocolError(f"Response from {self.name} is not an object")
        if data.get("type") == "error":
            raise self._error_frame(data.get("error"))

        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise UpstreamProtocolError(f"Response from {self.name} has no content")

        events: list[StageEvent] = []
        for index, block in enumerate(blocks):
            if not isinstance(block, dict):
                raise UpstreamProtocolError(f"Response from {self.name} has invalid content")
            if block.get("type") == "text":
                text = _text(block.get("text"), "content block text")
                if text:
                    events.append(StageEvent.content_delta(text, index=index))
            elif block.get("type") == "thinking":
                thinking = _text(block.get("thinking"), "content block thinking")
                if thinking:
                    events.append(StageEvent.reasoning_delta(thinking))

        if isinstance(data.get("usage"), dict):
            events.append(StageEvent.usage_report(self._usage(data["usage"], data.get("model"))))
        events.append(StageEvent.done(raw=data))
        return events

    def _new_stream_state(self) -> _MessagesStreamState:
        return _MessagesStreamState()

    def _parse_stream_data(self, data: str, state: _MessagesStreamState) -> list[StageEvent]:
        frame = self._decode(data)
        if not isinstance(frame, dict):
            raise UpstreamProtocolError(f"Stream frame from {self.name} is not an object")

        event_type = frame.get("type")

        if event_type == "message_start":
            message = _object(frame.get("message"), "message")
            state.model = _text(message.get("model"), "model") or state.model
            state.usage = dict(_object(message.get("usage"), "usage"))

        elif event_type == "content_block_start":
            block = _object(frame.get("content_block"), "content_block")
            text = _text(block.get("text"), "content_block.text")
            if block.get("type") == "text" and text:
                return [StageEvent.content_delta(text, index=_block_index(frame))]

        elif event_type == "content_block_delta":
            delta = _object(frame.get("delta"), "delta")
            if delta.get("type") == "text_delta":
                text = _text(delta.get("text"), "delta.text")
                if text:
                    return [StageEvent.content_delta(text, index=_block_index(frame))]
            elif delta.get("type") == "thinking_delta":
                thinking = _text(delta.get("thinking"), "delta.thinking")
                if thinking:
                    return [StageEvent.reasoning_delta(thinking)]

        elif event_type == "message_delta":
            usage = _object(frame.get("usage"), "usage")
            if usage:
                state.usage = {**(state.usage or {}), **usage}

        elif event_type == "message_stop":
            events: list[StageEvent] = []
            if state.usage:
                events.append(StageEvent.usage_report(self._usage(state.usage, state.model)))
            events.append(StageEvent.done())
            return events

        elif event_type == "error":
            raise self._error_frame(frame.get("error"))

        return []


# ============================================================
# FACTORY
# ============================================================

ADAPTER_REGISTRY: dict[str, type[StageAdapter]] = {
    DeepSeekAdapter.provider: DeepSeekAdapter,
    OpenAICompatibleAdapter.provider: OpenAICompatibleAdapter,
    AnthropicAdapter.provider: AnthropicAdapter,
}

PROVIDER_ALIASES = {
    "claude": "anthropic",
    "gpt": "openai",
    "openai-compatible": "openai",
}


def create_stage_adapter(
    provider: str,
    model: str,
    base_url: str | None = None,
    timeout: float = 300.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StageAdapter:
    """
    Create a stage adapter by provider name.

    Args:
        provider: Provider name (deepseek, openai, anthropic)
        model: Upstream model identifier
        base_url: Optional endpoint override
        timeout: HTTP timeout in seconds
        transport: Optional httpx transport (tests, proxies)

    Returns:
        Configured StageAdapter instance
    """
    name = provider.lower()
    name = PROVIDER_ALIASES.get(name, name)

    adapter_cls = ADAPTER_REGISTRY.get(name)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unknown provider: {provider}",
            config_key="provider",
            details={"available": sorted(ADAPTER_REGISTRY)},
        )

    return adapter_cls(model=model, base_url=base_url, timeout=timeout, transport=transport)


def adapter_from_settings(
    settings: StageSettings, transport: httpx.AsyncBaseTransport | None = None
) -> StageAdapter:
    """Create the adapter described by one stage's settings group."""
    return create_stage_adapter(
        provider=settings.provider,
        model=settings.model,
        base_url=settings.base_url,
        timeout=settings.timeout_seconds,
        transport=transport,
    )


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    # Adapters
    "StageAdapter",
    "OpenAICompatibleAdapter",
    "DeepSeekAdapter",
    "AnthropicAdapter",
    # Factory
    "ADAPTER_REGISTRY",
    "PROVIDER_ALIASES",
    "create_stage_adapter",
    "adapter_from_settings",
]
