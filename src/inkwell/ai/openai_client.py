"""Model client for OpenAI-compatible endpoints that stream reasoning deltas."""

from __future__ import annotations

import inspect
import logging
from typing import Any, AsyncIterator, Dict

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, InternalServerError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import ModelStreamEvent, TokenCounterProtocol, UsageMetadata
from .client import ClientSettings, TiktokenCounter, TokenCounterRegistry
from .errors import TransportError

LOGGER = logging.getLogger(__name__)


class OpenAICompatibleModelClient:
    """Streams chat completions whose deltas carry ``reasoning_content``.

    Reasoning-capable OpenAI-compatible servers expose the private reasoning
    through a ``reasoning_content`` field next to the regular ``content``
    delta, and accept ``enable_thinking``/``thinking_budget`` in the request
    body. Token counts are computed locally with tiktoken.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

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
        messages: list[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
            "max_completion_tokens": max_output_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
            "extra_body": {
                "enable_thinking": thinking_budget_tokens > 0,
                "thinking_budget": thinking_budget_tokens,
            },
        }
        LOGGER.debug(
            "Starting streamed chat completion via %s (max_completion_tokens=%s, thinking=%s)",
            self._settings.model,
            max_output_tokens,
            thinking_budget_tokens,
        )

        try:
            response = await self._open_stream(payload)
            async with response:
                async for chunk in response:
                    for event in self._normalize_chunk(chunk):
                        yield event
        except APIStatusError as exc:
            raise TransportError(
                f"Model API returned HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Model API request failed: {exc}") from exc

    async def count_tokens(self, text: str, *, system: str | None = None) -> int:
        counter = self.get_token_counter()
        total = counter.count(text) if text else 0
        if system:
            total += counter.count(system)
        return total

    def get_token_counter(self) -> TokenCounterProtocol:
        return self._token_registry.get(self._settings.model)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    async def _open_stream(self, payload: Dict[str, Any]) -> Any:
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries + 1)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (APIConnectionError, RateLimitError, InternalServerError, httpx.TimeoutException)
            ),
        ):
            with attempt:
                return await self._client.chat.completions.create(**payload)
        raise TransportError("Model stream could not be opened")  # pragma: no cover - tenacity reraises

    def _normalize_chunk(self, chunk: Any) -> list[ModelStreamEvent]:
        events: list[ModelStreamEvent] = []
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            if delta is None:
                continue
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                events.append(ModelStreamEvent(kind="thinking", text=str(reasoning)))
            content = getattr(delta, "content", None)
            if content:
                events.append(ModelStreamEvent(kind="text", text=str(content)))
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            details = getattr(usage, "prompt_tokens_details", None)
            events.append(
                ModelStreamEvent(
                    kind="usage",
                    usage=UsageMetadata(
                        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                        cache_read_input_tokens=int(getattr(details, "cached_tokens", 0) or 0),
                    ),
                )
            )
        return events

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        self._token_registry.register(model_name, TiktokenCounter(model_name))


__all__ = ["OpenAICompatibleModelClient"]
