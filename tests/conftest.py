"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Iterable

import pytest

from inkwell.ai.ai_types import ModelStreamEvent, UsageMetadata


class RecordingSink:
    """Output sink that keeps every emitted line."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def emit(self, text: str) -> None:
        self.lines.append(text)


class ScriptedModelClient:
    """Model client double replaying a fixed event script.

    When ``fail_with`` is set the stream raises it after the scripted events
    have been delivered.
    """

    def __init__(
        self,
        events: Iterable[ModelStreamEvent] = (),
        *,
        prompt_tokens: int | Callable[[str], int] = 100,
        fail_with: BaseException | None = None,
        model_name: str = "scripted-model",
    ) -> None:
        self.events = list(events)
        self.prompt_tokens = prompt_tokens
        self.fail_with = fail_with
        self._model_name = model_name
        self.stream_calls: list[dict[str, Any]] = []
        self.count_calls: list[str] = []
        self.stream_closed = False
        self.closed = False

    @property
    def model_name(self) -> str:
        return self._model_name

    async def stream(
        self,
        prompt: str,
        *,
        max_output_tokens: int,
        thinking_budget_tokens: int,
        system: str | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        self.stream_calls.append(
            {
                "prompt": prompt,
                "max_output_tokens": max_output_tokens,
                "thinking_budget_tokens": thinking_budget_tokens,
                "system": system,
            }
        )
        try:
            for event in self.events:
                yield event
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.stream_closed = True

    async def count_tokens(self, text: str, *, system: str | None = None) -> int:
        self.count_calls.append(text)
        if callable(self.prompt_tokens):
            return self.prompt_tokens(text)
        return self.prompt_tokens

    async def aclose(self) -> None:
        self.closed = True


def thinking(text: str) -> ModelStreamEvent:
    return ModelStreamEvent(kind="thinking", text=text)


def text(value: str) -> ModelStreamEvent:
    return ModelStreamEvent(kind="text", text=value)


def usage(input_tokens: int, *, cache_creation: int = 0, cache_read: int = 0) -> ModelStreamEvent:
    return ModelStreamEvent(
        kind="usage",
        usage=UsageMetadata(
            input_tokens=input_tokens,
            cache_creation_input_tokens=cache_creation,
            cache_read_input_tokens=cache_read,
        ),
    )


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in (
        "INKWELL_API_KEY",
        "INKWELL_PROVIDER",
        "INKWELL_BASE_URL",
        "INKWELL_MODEL",
        "INKWELL_BETAS",
        "INKWELL_SAVE_DIR",
        "INKWELL_DEBUG",
        "INKWELL_DEBUG_LOGGING",
        "INKWELL_REQUEST_TIMEOUT",
        "INKWELL_MAX_RETRIES",
        "INKWELL_CONTEXT_WINDOW",
        "INKWELL_THINKING_BUDGET",
        "INKWELL_MAX_THINKING_BUDGET",
        "INKWELL_DESIRED_OUTPUT_TOKENS",
        "INKWELL_MIN_VISIBLE_OUTPUT_TOKENS",
        "INKWELL_SETTINGS_PATH",
        "ANTHROPIC_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INKWELL_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
