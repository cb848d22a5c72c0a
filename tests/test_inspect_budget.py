"""Tests for the budget inspection script."""

from __future__ import annotations

import pytest

from inkwell.scripts import inspect_budget


def test_inspect_budget_prints_feasible_plan(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = inspect_budget.main(["--text", "x" * 400, "--estimate-only"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Input prompt tokens: [100]" in output
    assert "feasible: yes" in output


def test_inspect_budget_flags_infeasible_plan(tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
    prompt = tmp_path / "prompt.txt"
    prompt.write_text("y" * 400, encoding="utf-8")

    exit_code = inspect_budget.main(
        ["--file", str(prompt), "--estimate-only", "--context-window", "36000", "--max-thinking-budget", "32000"]
    )

    assert exit_code == 3
    assert "feasible: no" in capsys.readouterr().out


def test_inspect_budget_rejects_invalid_limits(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = inspect_budget.main(["--text", "abc", "--estimate-only", "--context-window", "1000"])

    assert exit_code == 2
    assert "Invalid budget configuration" in capsys.readouterr().err
