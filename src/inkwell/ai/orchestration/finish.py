"""Pipeline stage: Finish.

Turns the assembled stream into durable artifacts: the cleaned report and the
raw reasoning trace, plus the word/token statistics reported to the user.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from ...utils.file_io import artifact_stem, unique_stem, write_text
from ...utils.markdown import strip_markdown
from ..ai_types import OutputSink
from ..client import ApproxByteCounter
from ..errors import PersistenceError, TransportError
from .budget import BudgetPlan
from .streaming import StreamAccumulator

__all__ = [
    "ResponseFinisher",
    "RunArtifact",
    "count_words",
    "format_elapsed",
]

LOGGER = logging.getLogger(__name__)

TokenCountFn = Callable[[str], "int | Awaitable[int]"]


def _utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def count_words(text: str) -> int:
    """Count whitespace-delimited words."""
    return len(text.split())


def format_elapsed(seconds: float) -> str:
    minutes, remainder = divmod(max(0.0, seconds), 60)
    return f"{int(minutes)}m {remainder:.2f}s"


@dataclass(slots=True, frozen=True)
class RunArtifact:
    """Report and reasoning trace written by one completed run."""

    tool_id: str
    report_path: Path
    thinking_path: Path
    elapsed_seconds: float
    prompt_tokens: int
    response_tokens: int
    word_count: int
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def paths(self) -> tuple[Path, Path]:
        return (self.report_path, self.thinking_path)

    def as_payload(self) -> dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "report_path": str(self.report_path),
            "thinking_path": str(self.thinking_path),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "prompt_tokens": self.prompt_tokens,
            "response_tokens": self.response_tokens,
            "word_count": self.word_count,
            "created_at": self.created_at.isoformat(),
        }


class ResponseFinisher:
    """Writes the report/thinking pair for a finished stream."""

    def __init__(
        self,
        destination: Path | str,
        *,
        tool_id: str,
        count_tokens: TokenCountFn,
        label: str | None = None,
        sink: OutputSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._destination = Path(destination)
        self._tool_id = tool_id
        self._count_tokens = count_tokens
        self._label = (label or tool_id.replace("_", " ")).upper()
        self._sink = sink
        self._clock = clock

    async def finish(
        self,
        accumulator: StreamAccumulator,
        prompt_tokens: int,
        started_at: datetime,
        *,
        plan: BudgetPlan | None = None,
    ) -> RunArtifact:
        finished_at = self._clock()
        elapsed = max(0.0, (finished_at - started_at).total_seconds())
        self._emit(f"Completed in {format_elapsed(elapsed)}.")

        visible = accumulator.text
        word_count = count_words(visible)
        self._emit(f"Report has approximately {word_count} words.")
        response_tokens = await self._response_tokens(visible)
        self._emit(f"Response token count: {response_tokens}")

        report = strip_markdown(visible)
        stem = unique_stem(
            self._destination,
            artifact_stem(self._tool_id, started_at.astimezone()),
            (".txt", "_thinking.txt"),
        )
        report_path = self._destination / f"{stem}.txt"
        thinking_path = self._destination / f"{stem}_thinking.txt"
        trace = self._render_thinking(
            accumulator,
            prompt_tokens=prompt_tokens,
            response_tokens=response_tokens,
            started_at=started_at,
            plan=plan,
        )

        await self._write(report_path, report)
        self._emit(f"Report saved to: {report_path}")
        await self._write(thinking_path, trace)
        self._emit(f"AI thinking saved to: {thinking_path}")

        return RunArtifact(
            tool_id=self._tool_id,
            report_path=report_path,
            thinking_path=thinking_path,
            elapsed_seconds=elapsed,
            prompt_tokens=prompt_tokens,
            response_tokens=response_tokens,
            word_count=word_count,
            created_at=finished_at,
        )

    async def _response_tokens(self, text: str) -> int:
        if not text:
            return 0
        try:
            result = self._count_tokens(text)
            if inspect.isawaitable(result):
                result = await result
        except TransportError as exc:
            LOGGER.warning("Response token count failed, using an estimate: %s", exc)
            return ApproxByteCounter().estimate(text)
        return int(result)

    async def _write(self, path: Path, content: str) -> None:
        try:
            await asyncio.to_thread(write_text, path, content)
        except OSError as exc:
            LOGGER.error("Failed to write %s: %s", path, exc)
            raise PersistenceError(f"Unable to write {path}: {exc}", path=str(path)) from exc

    def _render_thinking(
        self,
        accumulator: StreamAccumulator,
        *,
        prompt_tokens: int,
        response_tokens: int,
        started_at: datetime,
        plan: BudgetPlan | None,
    ) -> str:
        local_start = started_at.astimezone()
        stats = [f"Details:  {local_start:%A, %B %d, %Y at %I:%M %p}"]
        if plan is not None:
            stats.extend(
                [
                    f"Max AI model context window: {plan.context_window} tokens",
                    f"AI model thinking budget: {plan.thinking_budget} tokens",
                    f"Visible output tokens: {plan.visible_output_tokens} tokens",
                    f"Max output tokens: {plan.max_tokens} tokens",
                ]
            )
        stats.append("")
        stats.append(f"Input tokens: {prompt_tokens}")
        stats.append(f"Output tokens: {response_tokens}")
        usage = accumulator.usage
        if usage is not None and (usage.cache_creation_input_tokens or usage.cache_read_input_tokens):
            stats.append(f"Cache creation input tokens: {usage.cache_creation_input_tokens}")
            stats.append(f"Cache read input tokens: {usage.cache_read_input_tokens}")

        return (
            f"=== {self._label} THINKING ===\n\n"
            f"{accumulator.thinking}\n\n"
            f"=== END {self._label} THINKING ===\n\n" + "\n".join(stats) + "\n"
        )

    def _emit(self, text: str) -> None:
        if self._sink is not None:
            self._sink.emit(text)
