"""Exception hierarchy shared by the budget, streaming, and finishing stages."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .orchestration.budget import BudgetPlan
    from .orchestration.streaming import StreamAccumulator

__all__ = [
    "InkwellError",
    "TransportError",
    "StreamError",
    "PersistenceError",
    "PromptTooLargeError",
]


class InkwellError(RuntimeError):
    """Base class for errors raised by the analysis run pipeline."""


class TransportError(InkwellError):
    """Raised by model clients when the remote API cannot be reached or rejects a call."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamError(InkwellError):
    """Terminal failure of a streaming session.

    The partially assembled accumulator is attached so the caller can decide
    whether the text delivered before the failure is worth keeping.
    """

    def __init__(self, message: str, *, accumulator: "StreamAccumulator") -> None:
        super().__init__(message)
        self.accumulator = accumulator


class PersistenceError(InkwellError):
    """Raised when a run artifact cannot be written to durable storage."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class PromptTooLargeError(InkwellError):
    """Raised by the runner when the budget plan for a prompt is infeasible."""

    def __init__(self, plan: "BudgetPlan") -> None:
        super().__init__(
            f"Prompt is too large for a {plan.thinking_budget} token thinking budget - run aborted"
        )
        self.plan = plan

    @property
    def user_message(self) -> str:
        plan = self.plan
        shortfall = max(0, plan.required_tokens - plan.output_room)
        return (
            f"The prompt ({plan.prompt_tokens:,} tokens) is too large for the required reasoning depth: "
            f"{plan.required_tokens:,} tokens are needed after the prompt but only "
            f"{plan.output_room:,} are available ({shortfall:,} short). "
            "Shorten the input and run the tool again."
        )
