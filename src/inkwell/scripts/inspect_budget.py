"""CLI helper to inspect the token budget plan for a prompt without calling the model."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from ..ai.client import ApproxByteCounter, TiktokenCounter
from ..ai.orchestration.budget import BudgetConfig, allocate, describe_plan
from ..utils.file_io import read_text


def main(argv: Sequence[str] | None = None) -> int:
    defaults = BudgetConfig()
    parser = argparse.ArgumentParser(description="Inspect the token budget plan for the given prompt.")
    parser.add_argument("--model", default="gpt-4o-mini", help="Model identifier to use for token counting.")
    parser.add_argument(
        "--file",
        type=Path,
        help="Optional file containing the prompt. Reads stdin when omitted and --text not provided.",
    )
    parser.add_argument("--text", help="Inline prompt text. Overrides --file when provided.")
    parser.add_argument(
        "--estimate-only",
        action="store_true",
        help="Skip tiktoken lookups and use the byte-length estimator.",
    )
    parser.add_argument("--context-window", type=int, default=defaults.context_window)
    parser.add_argument("--thinking-budget", type=int, default=defaults.configured_thinking_budget)
    parser.add_argument("--max-thinking-budget", type=int, default=defaults.max_thinking_budget)
    parser.add_argument("--desired-output", type=int, default=defaults.desired_output_tokens)
    parser.add_argument("--minimum-visible", type=int, default=defaults.minimum_visible_output_tokens)
    parser.add_argument("--output-ceiling", type=int, default=None)
    args = parser.parse_args(argv)

    payload = _load_text(args.text, args.file)
    if not payload:
        print("No input text provided.", file=sys.stderr)
        return 1

    try:
        config = BudgetConfig(
            context_window=args.context_window,
            desired_output_tokens=args.desired_output,
            configured_thinking_budget=args.thinking_budget,
            max_thinking_budget=args.max_thinking_budget,
            minimum_visible_output_tokens=args.minimum_visible,
            output_token_ceiling=args.output_ceiling,
        )
    except ValueError as exc:
        print(f"Invalid budget configuration: {exc}", file=sys.stderr)
        return 2

    counter = _build_counter(args.model, estimate_only=args.estimate_only)
    prompt_tokens = counter.count(payload)
    plan = allocate(prompt_tokens, config)

    print(f"model: {args.model}")
    print(f"characters: {len(payload)}")
    for line in describe_plan(plan, config):
        print(line)
    print(f"feasible: {'yes' if plan.feasible else 'no'}")
    return 0 if plan.feasible else 3


def _load_text(inline: str | None, path: Path | None) -> str:
    if inline:
        return inline
    if path:
        return read_text(path)
    data = sys.stdin.read()
    return data.strip()


def _build_counter(model: str, *, estimate_only: bool) -> ApproxByteCounter | TiktokenCounter:
    if estimate_only:
        return ApproxByteCounter(model_name=model)
    try:
        return TiktokenCounter(model)
    except Exception as exc:  # pragma: no cover - offline tokenizer download
        print(f"tiktoken unavailable ({exc}); using byte estimate.", file=sys.stderr)
        return ApproxByteCounter(model_name=model)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
