"""Async model client for the Anthropic Messages API with extended thinking."""

from __future__ import annotations

import contextlib
import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Sequence, cast

import httpx
import tiktoken
from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncAnthropic,
    InternalServerError,
    RateLimitError,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import ModelStreamEvent, TokenCounterProtocol, UsageMetadata
from .errors import TransportError

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
ANTHROPIC_MIN_THINKING_BUDGET = 1_024
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by the tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("No tiktoken mapping for model %s; using cl100k_base", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a model client."""

    api_key: str
    model: str
    base_url: str | None = None
    organization: str | None = None
    request_timeout: float | None = 300.0
    max_retries: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    betas: Sequence[str] = ()
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class AnthropicModelClient:
    """Streams thinking-enabled completions and counts prompt tokens remotely."""

    def __init__(self, settings: ClientSettings, *, client: AsyncAnthropic | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._betas = [beta.strip() for beta in settings.betas if beta and beta.strip()]

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model_name(self) -> str:
        return self._settings.model

    async def stream(
        self,
        prompt: str,
        *,
        max_output_tokens: int,
        thinking_budget_tokens: int,
        system: str | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        """Stream one completion, yielding thinking, text, and usage events in order.

        Opening the stream is retried for transient failures; once the first
        event has arrived, any failure ends the stream with ``TransportError``.
        """

        payload = self._build_message_payload(
            prompt,
            system=system,
            max_output_tokens=max_output_tokens,
            thinking_budget_tokens=thinking_budget_tokens,
        )
        LOGGER.debug(
            "Starting streamed message via %s (max_tokens=%s, thinking=%s, prompt_chars=%s)",
            self._settings.model,
            max_output_tokens,
            thinking_budget_tokens,
            len(prompt),
        )
        if self._settings.debug_logging:
            self._log_request_payload(payload)

        try:
            async with contextlib.AsyncExitStack() as stack:
                stream = await self._open_stream(stack, payload)
                async for event in stream:
                    normalized = self._normalize_stream_event(event)
                    if normalized is not None:
                        yield normalized
        except APIStatusError as exc:
            raise TransportError(
                f"Model API returned HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Model API request failed: {exc}") from exc

    async def count_tokens(self, text: str, *, system: str | None = None) -> int:
        """Ask the API how many input tokens *text* occupies."""

        if not text:
            return 0
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [{"role": "user", "content": text}],
        }
        if system:
            payload["system"] = system
        try:
            async for attempt in self._retrying():
                with attempt:
                    if self._betas:
                        response = await self._client.beta.messages.count_tokens(**payload, betas=self._betas)
                    else:
                        response = await self._client.messages.count_tokens(**payload)
        except APIStatusError as exc:
            raise TransportError(
                f"Token counting failed with HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Token counting failed: {exc}") from exc
        return int(getattr(response, "input_tokens", 0) or 0)

    async def aclose(self) -> None:
        """Close the underlying SDK client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def _build_client(self, settings: ClientSettings) -> AsyncAnthropic:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncAnthropic(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    async def _open_stream(self, stack: contextlib.AsyncExitStack, payload: Mapping[str, Any]) -> Any:
        async for attempt in self._retrying():
            with attempt:
                if self._betas:
                    manager = self._client.beta.messages.stream(**payload, betas=self._betas)
                else:
                    manager = self._client.messages.stream(**payload)
                return await stack.enter_async_context(manager)
        raise TransportError("Model stream could not be opened")  # pragma: no cover - tenacity reraises

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries + 1)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _build_message_payload(
        self,
        prompt: str,
        *,
        system: str | None,
        max_output_tokens: int,
        thinking_budget_tokens: int,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if 0 < thinking_budget_tokens < ANTHROPIC_MIN_THINKING_BUDGET:
            raise TransportError(
                f"Thinking budget {thinking_budget_tokens} is below the provider minimum of "
                f"{ANTHROPIC_MIN_THINKING_BUDGET} tokens"
            )
        if thinking_budget_tokens > 0 and max_output_tokens <= thinking_budget_tokens:
            raise TransportError(
                f"max_tokens {max_output_tokens} must exceed the thinking budget {thinking_budget_tokens}"
            )
        if thinking_budget_tokens > 0:
            payload["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget_tokens}
        else:
            payload["thinking"] = {"type": "disabled"}
        if system:
            payload["system"] = system
        return payload

    def _normalize_stream_event(self, event: Any) -> ModelStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type == "content_block_delta":
            delta = getattr(event, "delta", None)
            delta_type = getattr(delta, "type", None)
            if delta_type == "thinking_delta":
                text = getattr(delta, "thinking", None)
                return ModelStreamEvent(kind="thinking", text=str(text)) if text else None
            if delta_type == "text_delta":
                text = getattr(delta, "text", None)
                return ModelStreamEvent(kind="text", text=str(text)) if text else None
            return None
        if event_type == "message_start":
            message = getattr(event, "message", None)
            usage = getattr(message, "usage", None)
            if usage is None:
                return None
            return ModelStreamEvent(
                kind="usage",
                usage=UsageMetadata(
                    input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                    cache_creation_input_tokens=int(getattr(usage, "cache_creation_input_tokens", 0) or 0),
                    cache_read_input_tokens=int(getattr(usage, "cache_read_input_tokens", 0) or 0),
                ),
            )
        return None

    def _log_request_payload(self, payload: Mapping[str, Any]) -> None:
        redacted = dict(payload)
        messages = cast(list, redacted.get("messages") or [])
        redacted["messages"] = [
            {"role": message.get("role"), "content_chars": len(str(message.get("content", "")))}
            for message in messages
        ]
        try:
            serialized = json.dumps(redacted, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Model request payload (unserializable): %s", redacted)
        else:
            LOGGER.debug("Model request payload:\n%s", serialized)


__all__ = [
    "ANTHROPIC_MIN_THINKING_BUDGET",
    "AnthropicModelClient",
    "ApproxByteCounter",
    "ClientSettings",
    "TiktokenCounter",
    "TokenCounterRegistry",
]
