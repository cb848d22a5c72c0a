"""Token budget allocation for thinking-enabled analysis requests.

The model's context window is shared by the prompt, the private reasoning
tokens, and the visible answer. :func:`allocate` splits what is left after the
prompt between reasoning and answer, always granting the reasoning allowance
first. The visible share is the only one that ever shrinks; when even the
minimum useful answer cannot fit next to the full reasoning allowance, the
plan is flagged infeasible and the caller is expected to abort the run.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

__all__ = [
    "BudgetConfig",
    "BudgetPlan",
    "allocate",
    "describe_plan",
]


@dataclass(slots=True, frozen=True)
class BudgetConfig:
    """Token limits supplied by the caller.

    Attributes:
        context_window: Total tokens the model can hold for one exchange.
        desired_output_tokens: Preferred size of the visible answer.
        configured_thinking_budget: Requested reasoning allowance.
        max_thinking_budget: Hard cap on the reasoning allowance.
        minimum_visible_output_tokens: Smallest visible answer worth producing.
        output_token_ceiling: Optional API limit on ``max_tokens`` (thinking +
            visible), independent of the context window.
    """

    context_window: int = 200_000
    desired_output_tokens: int = 12_000
    configured_thinking_budget: int = 32_000
    max_thinking_budget: int = 32_000
    minimum_visible_output_tokens: int = 4_000
    output_token_ceiling: int | None = None

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None and item.name == "output_token_ceiling":
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{item.name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{item.name} must be non-negative, got {value}")
        if self.max_thinking_budget > self.context_window:
            raise ValueError(
                f"max_thinking_budget ({self.max_thinking_budget}) cannot exceed "
                f"context_window ({self.context_window})"
            )


@dataclass(slots=True, frozen=True)
class BudgetPlan:
    """Concrete split of the output ceiling for one request.

    When ``infeasible`` is set, ``visible_output_tokens`` and ``max_tokens``
    are zero and the remaining fields only serve diagnostics.
    """

    prompt_tokens: int
    context_window: int
    available_tokens: int
    thinking_budget: int
    visible_output_tokens: int
    max_tokens: int
    capped: bool
    infeasible: bool
    required_tokens: int
    output_room: int

    @property
    def feasible(self) -> bool:
        return not self.infeasible

    def as_payload(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "context_window": self.context_window,
            "available_tokens": self.available_tokens,
            "thinking_budget": self.thinking_budget,
            "visible_output_tokens": self.visible_output_tokens,
            "max_tokens": self.max_tokens,
            "capped": self.capped,
            "infeasible": self.infeasible,
            "required_tokens": self.required_tokens,
            "output_room": self.output_room,
        }


def allocate(prompt_tokens: int, config: BudgetConfig) -> BudgetPlan:
    """Return the token allocation for a prompt of ``prompt_tokens`` tokens.

    Infeasibility is reported through :attr:`BudgetPlan.infeasible`; this
    function never raises for an oversized prompt.
    """

    prompt_tokens = max(0, int(prompt_tokens))
    available = max(0, config.context_window - prompt_tokens)
    thinking = min(config.configured_thinking_budget, config.max_thinking_budget)
    capped = config.configured_thinking_budget > config.max_thinking_budget
    required = thinking + config.minimum_visible_output_tokens

    room = available
    if config.output_token_ceiling is not None:
        room = min(room, config.output_token_ceiling)

    if room < required:
        return BudgetPlan(
            prompt_tokens=prompt_tokens,
            context_window=config.context_window,
            available_tokens=available,
            thinking_budget=thinking,
            visible_output_tokens=0,
            max_tokens=0,
            capped=capped,
            infeasible=True,
            required_tokens=required,
            output_room=room,
        )

    remaining = room - thinking
    visible = max(
        min(config.desired_output_tokens, remaining),
        config.minimum_visible_output_tokens,
    )
    return BudgetPlan(
        prompt_tokens=prompt_tokens,
        context_window=config.context_window,
        available_tokens=available,
        thinking_budget=thinking,
        visible_output_tokens=visible,
        max_tokens=thinking + visible,
        capped=capped,
        infeasible=False,
        required_tokens=required,
        output_room=room,
    )


def describe_plan(plan: BudgetPlan, config: BudgetConfig) -> list[str]:
    """Render the token statistics printed before each run."""

    lines = [
        "Token stats:",
        f"Max AI model context window: [{plan.context_window}] tokens",
        f"Input prompt tokens: [{plan.prompt_tokens}]",
        (
            f"Available tokens: [{plan.available_tokens}] = {plan.context_window} - "
            f"{plan.prompt_tokens} = context_window - prompt"
        ),
        f"Desired output tokens: [{config.desired_output_tokens}]",
        f"AI model thinking budget: [{plan.thinking_budget}] tokens",
    ]
    if plan.infeasible:
        lines.append(
            f"Required after prompt: [{plan.required_tokens}] tokens = {plan.thinking_budget} thinking + "
            f"{config.minimum_visible_output_tokens} minimum visible output"
        )
    else:
        lines.append(f"Visible output tokens: [{plan.visible_output_tokens}] tokens")
        lines.append(f"Max output tokens: [{plan.max_tokens}] tokens")
    if plan.capped:
        lines.append(
            f"Warning: configured thinking budget {config.configured_thinking_budget} exceeds the "
            f"{config.max_thinking_budget} token cap; using {plan.thinking_budget}."
        )
    if plan.output_room < plan.available_tokens:
        lines.append(f"Output ceiling: [{plan.output_room}] tokens")
    return lines
