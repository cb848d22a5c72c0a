"""Tool runner that drives one analysis run through budget, stream and finish."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from ...services import telemetry
from ...services.run_registry import RunRegistry
from ...services.telemetry import RunUsageEvent, TelemetrySink
from ..ai_types import ModelClientProtocol, OutputSink
from ..errors import PromptTooLargeError, StreamError
from .budget import BudgetConfig, BudgetPlan, allocate, describe_plan
from .finish import ResponseFinisher, RunArtifact
from .streaming import DeltaCallback, StreamingSession

__all__ = ["ToolRequest", "ToolRunner"]

LOGGER = logging.getLogger(__name__)

TelemetryEmitter = Callable[[str, Mapping[str, Any]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ToolRequest:
    """Single tool invocation: the full prompt and where to save its output."""

    tool_id: str
    prompt: str
    save_dir: Path | str
    system_prompt: str | None = None
    label: str | None = None


class ToolRunner:
    """Runs tool requests end to end and records their artifacts.

    Runs of different tools proceed independently. Runs of the same tool
    queue behind each other so the registry always reflects one complete run.
    """

    def __init__(
        self,
        client: ModelClientProtocol,
        config: BudgetConfig,
        *,
        registry: RunRegistry | None = None,
        sink: OutputSink | None = None,
        telemetry_emitter: TelemetryEmitter | None = None,
        telemetry_sink: TelemetrySink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._config = config
        self._registry = registry or RunRegistry()
        self._sink = sink
        self._emit_event = telemetry_emitter or telemetry.emit
        self._telemetry_sink = telemetry_sink
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def config(self) -> BudgetConfig:
        return self._config

    async def plan(self, prompt: str, *, system_prompt: str | None = None) -> tuple[int, BudgetPlan]:
        """Count *prompt* and allocate its budget without contacting the model."""

        prompt_tokens = await self._client.count_tokens(prompt, system=system_prompt)
        return prompt_tokens, allocate(prompt_tokens, self._config)

    async def run(
        self,
        request: ToolRequest,
        *,
        on_thinking: DeltaCallback | None = None,
        on_text: DeltaCallback | None = None,
    ) -> RunArtifact:
        lock = self._locks.setdefault(request.tool_id, asyncio.Lock())
        if lock.locked():
            LOGGER.info("Waiting for the previous %s run to finish", request.tool_id)
        async with lock:
            return await self._run_locked(request, on_thinking=on_thinking, on_text=on_text)

    async def _run_locked(
        self,
        request: ToolRequest,
        *,
        on_thinking: DeltaCallback | None,
        on_text: DeltaCallback | None,
    ) -> RunArtifact:
        tool_id = request.tool_id
        self._registry.clear(tool_id)
        started_at = self._clock()

        prompt_tokens, plan = await self.plan(request.prompt, system_prompt=request.system_prompt)
        for line in describe_plan(plan, self._config):
            self._emit(line)
        self._emit_event("budget_plan", {"tool_id": tool_id, **plan.as_payload()})

        if plan.infeasible:
            error = PromptTooLargeError(plan)
            LOGGER.warning("%s: %s", tool_id, error)
            self._emit(f"Error: {error.user_message}")
            raise error

        self._emit(f"Sending request to {self._client.model_name} ...")
        session = StreamingSession(self._client, system_prompt=request.system_prompt)
        try:
            accumulator = await session.run(
                request.prompt, plan, on_thinking=on_thinking, on_text=on_text
            )
        except StreamError as exc:
            self._emit(f"API Error: {exc}")
            self._emit_event(
                "run_failed",
                {
                    "tool_id": tool_id,
                    "thinking_chars": len(exc.accumulator.thinking),
                    "text_chars": len(exc.accumulator.text),
                },
            )
            raise

        finisher = ResponseFinisher(
            request.save_dir,
            tool_id=tool_id,
            count_tokens=self._client.count_tokens,
            label=request.label,
            sink=self._sink,
            clock=self._clock,
        )
        artifact = await finisher.finish(accumulator, prompt_tokens, started_at, plan=plan)
        for path in artifact.paths:
            self._registry.record(tool_id, path)

        self._emit_event("run_completed", artifact.as_payload())
        if self._telemetry_sink is not None:
            usage = accumulator.usage
            self._telemetry_sink.record(
                RunUsageEvent(
                    tool_id=tool_id,
                    model=self._client.model_name,
                    prompt_tokens=prompt_tokens,
                    response_tokens=artifact.response_tokens,
                    thinking_budget=plan.thinking_budget,
                    max_tokens=plan.max_tokens,
                    elapsed_seconds=artifact.elapsed_seconds,
                    cache_read_tokens=usage.cache_read_input_tokens if usage else 0,
                    timestamp=artifact.created_at.timestamp(),
                )
            )
        return artifact

    def _emit(self, text: str) -> None:
        if self._sink is not None:
            self._sink.emit(text)
