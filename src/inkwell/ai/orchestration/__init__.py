"""Run pipeline: budget calculator, streaming session, response finisher."""

from .budget import BudgetConfig, BudgetPlan, allocate, describe_plan
from .finish import ResponseFinisher, RunArtifact, count_words, format_elapsed
from .runner import ToolRequest, ToolRunner
from .streaming import StreamAccumulator, StreamingSession

__all__ = [
    "BudgetConfig",
    "BudgetPlan",
    "ResponseFinisher",
    "RunArtifact",
    "StreamAccumulator",
    "StreamingSession",
    "ToolRequest",
    "ToolRunner",
    "allocate",
    "count_words",
    "describe_plan",
    "format_elapsed",
]
