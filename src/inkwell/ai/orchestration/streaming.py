"""Streaming session that assembles a two-channel model response."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from typing import Callable

import httpx

from ..ai_types import ModelClientProtocol, ModelStreamEvent, UsageMetadata
from ..errors import StreamError, TransportError
from .budget import BudgetPlan

__all__ = [
    "DeltaCallback",
    "StreamAccumulator",
    "StreamingSession",
]

LOGGER = logging.getLogger(__name__)

DeltaCallback = Callable[[str], object]


@dataclass(slots=True)
class StreamAccumulator:
    """Fragments received during one request, kept in arrival order."""

    thinking_fragments: list[str] = field(default_factory=list)
    text_fragments: list[str] = field(default_factory=list)
    usage: UsageMetadata | None = None

    @property
    def thinking(self) -> str:
        return "".join(self.thinking_fragments)

    @property
    def text(self) -> str:
        return "".join(self.text_fragments)

    @property
    def is_empty(self) -> bool:
        return not self.thinking_fragments and not self.text_fragments

    def record_usage(self, usage: UsageMetadata) -> bool:
        """Store *usage* unless a previous event already supplied it."""

        if self.usage is not None:
            return False
        self.usage = usage
        return True


class StreamingSession:
    """Drives one request/response exchange against the remote model.

    Events are handled strictly in the order the transport delivers them:
    reasoning deltas go to the thinking channel, answer deltas to the visible
    channel, and the first usage report is kept. Callbacks run synchronously
    as each delta arrives.
    """

    def __init__(self, client: ModelClientProtocol, *, system_prompt: str | None = None) -> None:
        self._client = client
        self._system_prompt = system_prompt

    async def run(
        self,
        prompt: str,
        plan: BudgetPlan,
        on_thinking: DeltaCallback | None = None,
        on_text: DeltaCallback | None = None,
    ) -> StreamAccumulator:
        if plan.infeasible:
            raise ValueError("StreamingSession.run requires a feasible budget plan")

        accumulator = StreamAccumulator()
        events = self._client.stream(
            prompt,
            max_output_tokens=plan.max_tokens,
            thinking_budget_tokens=plan.thinking_budget,
            system=self._system_prompt,
        )
        try:
            async with contextlib.aclosing(events) as stream:
                async for event in stream:
                    self._dispatch(event, accumulator, on_thinking, on_text)
        except (TransportError, httpx.HTTPError, TimeoutError) as exc:
            LOGGER.warning(
                "Stream failed after %d thinking / %d text fragment(s): %s",
                len(accumulator.thinking_fragments),
                len(accumulator.text_fragments),
                exc,
            )
            raise StreamError(str(exc) or exc.__class__.__name__, accumulator=accumulator) from exc

        LOGGER.debug(
            "Stream completed: %d thinking / %d text fragment(s), usage=%s",
            len(accumulator.thinking_fragments),
            len(accumulator.text_fragments),
            accumulator.usage,
        )
        return accumulator

    def _dispatch(
        self,
        event: ModelStreamEvent,
        accumulator: StreamAccumulator,
        on_thinking: DeltaCallback | None,
        on_text: DeltaCallback | None,
    ) -> None:
        if event.kind == "thinking":
            accumulator.thinking_fragments.append(event.text)
            if on_thinking is not None:
                on_thinking(event.text)
        elif event.kind == "text":
            accumulator.text_fragments.append(event.text)
            if on_text is not None:
                on_text(event.text)
        elif event.kind == "usage" and event.usage is not None:
            if not accumulator.record_usage(event.usage):
                LOGGER.debug("Ignoring repeated usage report: %s", event.usage)
