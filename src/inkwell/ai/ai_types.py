"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Protocol

StreamEventKind = Literal["thinking", "text", "usage"]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True, frozen=True)
class UsageMetadata:
    """Prompt-side usage reported by the remote model once per stream."""

    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def as_payload(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }


@dataclass(slots=True, frozen=True)
class ModelStreamEvent:
    """Normalized representation of a streamed model event."""

    kind: StreamEventKind
    text: str = ""
    usage: UsageMetadata | None = None


class ModelClientProtocol(Protocol):
    """Remote model client consumed by the streaming session and runner."""

    @property
    def model_name(self) -> str:  # pragma: no cover - protocol stub
        ...

    def stream(
        self,
        prompt: str,
        *,
        max_output_tokens: int,
        thinking_budget_tokens: int,
        system: str | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        """Yield normalized events in arrival order, raising ``TransportError`` on failure."""
        ...

    async def count_tokens(self, text: str, *, system: str | None = None) -> int:
        """Return the number of input tokens *text* occupies for this model."""
        ...

    async def aclose(self) -> None:
        ...


class OutputSink(Protocol):
    """Progress/diagnostic channel; the pipeline only ever writes to it."""

    def emit(self, text: str) -> Any:  # pragma: no cover - protocol stub
        ...


__all__ = [
    "ModelClientProtocol",
    "ModelStreamEvent",
    "OutputSink",
    "StreamEventKind",
    "TokenCounterProtocol",
    "UsageMetadata",
]
