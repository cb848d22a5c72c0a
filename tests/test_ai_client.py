"""Tests for the Anthropic and OpenAI-compatible model clients."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import anthropic
import httpx
import openai
import pytest

from inkwell.ai.client import AnthropicModelClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry
from inkwell.ai.errors import TransportError
from inkwell.ai.openai_client import OpenAICompatibleModelClient

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/messages")


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = dict(
        api_key="test",
        model="claude-test",
        max_retries=1,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    values.update(overrides)
    return ClientSettings(**values)


def _thinking_delta(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="thinking_delta", thinking=text))


def _text_delta(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


def _message_start(input_tokens: int, *, cache_creation: int = 0, cache_read: int = 0) -> SimpleNamespace:
    usage = SimpleNamespace(
        input_tokens=input_tokens,
        cache_creation_input_tokens=cache_creation,
        cache_read_input_tokens=cache_read,
    )
    return SimpleNamespace(type="message_start", message=SimpleNamespace(usage=usage))


class _FakeStream:
    def __init__(self, events: Iterable[Any], *, fail_with: BaseException | None = None):
        self._iterator = iter(list(events))
        self._fail_with = fail_with

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            if self._fail_with is not None:
                raise self._fail_with from None
            raise StopAsyncIteration from exc


class _FakeStreamManager:
    def __init__(self, owner: "_FakeMessages", events: Iterable[Any], fail_with: BaseException | None):
        self._owner = owner
        self._events = list(events)
        self._fail_with = fail_with

    async def __aenter__(self) -> _FakeStream:
        if self._owner.open_failures:
            raise self._owner.open_failures.pop(0)
        self._owner.entered += 1
        return _FakeStream(self._events, fail_with=self._fail_with)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._owner.exited += 1
        return False


class _FakeMessages:
    def __init__(
        self,
        events: Iterable[Any] = (),
        *,
        open_failures: Iterable[BaseException] = (),
        fail_with: BaseException | None = None,
        input_tokens: int = 0,
    ):
        self._events = list(events)
        self._fail_with = fail_with
        self._input_tokens = input_tokens
        self.open_failures = list(open_failures)
        self.stream_calls: list[dict[str, Any]] = []
        self.count_calls: list[dict[str, Any]] = []
        self.entered = 0
        self.exited = 0

    def stream(self, **kwargs: Any) -> _FakeStreamManager:
        self.stream_calls.append(kwargs)
        return _FakeStreamManager(self, self._events, self._fail_with)

    async def count_tokens(self, **kwargs: Any) -> SimpleNamespace:
        self.count_calls.append(kwargs)
        return SimpleNamespace(input_tokens=self._input_tokens)


def _anthropic_client(messages: _FakeMessages, **settings: Any) -> AnthropicModelClient:
    fake = SimpleNamespace(messages=messages, beta=SimpleNamespace(messages=messages))
    return AnthropicModelClient(_settings(**settings), client=cast(anthropic.AsyncAnthropic, fake))


async def _collect(client: Any, **kwargs: Any) -> list[Any]:
    params = dict(max_output_tokens=44_000, thinking_budget_tokens=32_000)
    params.update(kwargs)
    return [event async for event in client.stream("Review this chapter.", **params)]


@pytest.mark.asyncio
async def test_anthropic_stream_normalizes_thinking_text_and_usage() -> None:
    messages = _FakeMessages(
        [
            _message_start(1_200, cache_read=300),
            SimpleNamespace(type="content_block_start", index=0),
            _thinking_delta("Weighing pacing."),
            SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="signature_delta", signature="x")),
            _text_delta("The opening drags."),
            SimpleNamespace(type="message_stop"),
        ]
    )
    client = _anthropic_client(messages)

    events = await _collect(client, system="Plain text only.")

    assert [event.kind for event in events] == ["usage", "thinking", "text"]
    assert events[0].usage.input_tokens == 1_200
    assert events[0].usage.cache_read_input_tokens == 300
    assert events[1].text == "Weighing pacing."
    assert events[2].text == "The opening drags."
    call = messages.stream_calls[0]
    assert call["model"] == "claude-test"
    assert call["max_tokens"] == 44_000
    assert call["thinking"] == {"type": "enabled", "budget_tokens": 32_000}
    assert call["system"] == "Plain text only."
    assert call["messages"] == [{"role": "user", "content": "Review this chapter."}]
    assert "betas" not in call
    assert messages.exited == 1


@pytest.mark.asyncio
async def test_anthropic_stream_passes_betas_and_disables_zero_thinking() -> None:
    messages = _FakeMessages([_text_delta("ok")])
    client = _anthropic_client(messages, betas=("output-128k-2025-02-19", " "))

    await _collect(client, thinking_budget_tokens=0)

    call = messages.stream_calls[0]
    assert call["betas"] == ["output-128k-2025-02-19"]
    assert call["thinking"] == {"type": "disabled"}
    assert "system" not in call


@pytest.mark.asyncio
async def test_anthropic_stream_retries_opening_on_connection_error() -> None:
    messages = _FakeMessages(
        [_text_delta("recovered")],
        open_failures=[anthropic.APIConnectionError(request=_REQUEST)],
    )
    client = _anthropic_client(messages, max_retries=1)

    events = await _collect(client)

    assert [event.text for event in events] == ["recovered"]
    assert len(messages.stream_calls) == 2


@pytest.mark.asyncio
async def test_anthropic_stream_gives_up_after_retry_budget() -> None:
    messages = _FakeMessages(
        [_text_delta("never")],
        open_failures=[
            anthropic.APIConnectionError(request=_REQUEST),
            anthropic.APIConnectionError(request=_REQUEST),
        ],
    )
    client = _anthropic_client(messages, max_retries=1)

    with pytest.raises(TransportError):
        await _collect(client)
    assert len(messages.stream_calls) == 2


@pytest.mark.asyncio
async def test_anthropic_status_error_is_not_retried_and_keeps_status() -> None:
    response = httpx.Response(400, request=_REQUEST)
    error = anthropic.BadRequestError("prompt is too long", response=response, body=None)
    messages = _FakeMessages(open_failures=[error])
    client = _anthropic_client(messages, max_retries=3)

    with pytest.raises(TransportError) as excinfo:
        await _collect(client)

    assert excinfo.value.status_code == 400
    assert len(messages.stream_calls) == 1


@pytest.mark.asyncio
async def test_anthropic_mid_stream_failure_is_not_retried() -> None:
    messages = _FakeMessages(
        [_thinking_delta("partial")],
        fail_with=httpx.ReadError("connection dropped", request=_REQUEST),
    )
    client = _anthropic_client(messages, max_retries=3)
    received: list[Any] = []

    with pytest.raises(TransportError):
        async for event in client.stream("prompt", max_output_tokens=2_048, thinking_budget_tokens=1_024):
            received.append(event)

    assert [event.text for event in received] == ["partial"]
    assert len(messages.stream_calls) == 1
    assert messages.exited == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "max_output_tokens, thinking_budget_tokens, message",
    [(4_000, 1_023, "below the provider minimum"), (2_048, 2_048, "must exceed the thinking budget")],
)
async def test_anthropic_rejects_thinking_limits_before_request(
    max_output_tokens, thinking_budget_tokens, message
) -> None:
    messages = _FakeMessages([_text_delta("never")])
    client = _anthropic_client(messages)

    with pytest.raises(TransportError, match=message):
        await _collect(client, max_output_tokens=max_output_tokens, thinking_budget_tokens=thinking_budget_tokens)

    assert messages.stream_calls == []


@pytest.mark.asyncio
async def test_anthropic_count_tokens_uses_remote_counter() -> None:
    messages = _FakeMessages(input_tokens=106_448)
    client = _anthropic_client(messages)

    assert await client.count_tokens("manuscript", system="Plain text only.") == 106_448
    assert await client.count_tokens("") == 0
    assert messages.count_calls == [
        {
            "model": "claude-test",
            "messages": [{"role": "user", "content": "manuscript"}],
            "system": "Plain text only.",
        }
    ]


@pytest.mark.asyncio
async def test_anthropic_aclose_closes_sdk_client() -> None:
    closed: list[bool] = []

    async def _close() -> None:
        closed.append(True)

    fake = SimpleNamespace(messages=_FakeMessages(), close=_close)
    client = AnthropicModelClient(_settings(), client=cast(anthropic.AsyncAnthropic, fake))

    await client.aclose()

    assert closed == [True]


class _FakeChunkStream:
    def __init__(self, chunks: Iterable[Any]):
        self._iterator = iter(list(chunks))
        self.exited = False

    async def __aenter__(self) -> "_FakeChunkStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.exited = True
        return False

    def __aiter__(self) -> "_FakeChunkStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class _FakeCompletions:
    def __init__(self, chunks: Iterable[Any]):
        self._chunks = list(chunks)
        self.calls: list[dict[str, Any]] = []
        self.streams: list[_FakeChunkStream] = []

    async def create(self, **kwargs: Any) -> _FakeChunkStream:
        self.calls.append(kwargs)
        stream = _FakeChunkStream(self._chunks)
        self.streams.append(stream)
        return stream


def _chunk(*, reasoning: str | None = None, content: str | None = None, usage: Any = None) -> SimpleNamespace:
    choices = []
    if reasoning is not None or content is not None:
        choices.append(SimpleNamespace(delta=SimpleNamespace(reasoning_content=reasoning, content=content)))
    return SimpleNamespace(choices=choices, usage=usage)


def _openai_client(completions: _FakeCompletions, registry: TokenCounterRegistry) -> OpenAICompatibleModelClient:
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAICompatibleModelClient(
        _settings(model="qwen-reasoner"),
        client=cast(openai.AsyncOpenAI, fake),
        token_registry=registry,
    )


def _registry() -> TokenCounterRegistry:
    registry = TokenCounterRegistry()
    registry.register("qwen-reasoner", ApproxByteCounter(model_name="qwen-reasoner"))
    return registry


@pytest.mark.asyncio
async def test_openai_stream_splits_reasoning_and_content() -> None:
    usage = SimpleNamespace(prompt_tokens=42, prompt_tokens_details=SimpleNamespace(cached_tokens=7))
    completions = _FakeCompletions(
        [
            _chunk(reasoning="Think "),
            _chunk(reasoning="harder."),
            _chunk(content="Answer"),
            _chunk(usage=usage),
        ]
    )
    client = _openai_client(completions, _registry())

    events = await _collect(client, system="Plain text only.")

    assert [(event.kind, event.text) for event in events[:3]] == [
        ("thinking", "Think "),
        ("thinking", "harder."),
        ("text", "Answer"),
    ]
    assert events[3].kind == "usage"
    assert events[3].usage.input_tokens == 42
    assert events[3].usage.cache_read_input_tokens == 7
    call = completions.calls[0]
    assert call["max_completion_tokens"] == 44_000
    assert call["stream"] is True
    assert call["stream_options"] == {"include_usage": True}
    assert call["extra_body"] == {"enable_thinking": True, "thinking_budget": 32_000}
    assert call["messages"][0] == {"role": "system", "content": "Plain text only."}
    assert completions.streams[0].exited is True


@pytest.mark.asyncio
async def test_openai_count_tokens_uses_registered_counter() -> None:
    client = _openai_client(_FakeCompletions([]), _registry())

    assert await client.count_tokens("abcdefgh") == 2
    assert await client.count_tokens("abcdefgh", system="abcd") == 3
    assert await client.count_tokens("") == 0


def test_approx_byte_counter_rounds_up() -> None:
    counter = ApproxByteCounter()

    assert counter.count("") == 0
    assert counter.count("a") == 1
    assert counter.count("abcde") == 2


def test_registry_falls_back_for_unknown_models() -> None:
    registry = TokenCounterRegistry()
    counter = ApproxByteCounter(model_name="custom")
    registry.register("Custom", counter)

    assert registry.has("custom")
    assert registry.get("CUSTOM") is counter
    assert registry.count("unknown", "abcd") == 1
    with pytest.raises(ValueError):
        registry.register("  ", counter)
