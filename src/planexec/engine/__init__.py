"""Execution engine and its collaborators."""

from .executor import CheckpointResponder, ExecutionEngine
from .runner import CancellationToken, LLMToolRunner, ToolRun, ToolRunner
from .summary import SummaryWriter

__all__ = [
    "CancellationToken",
    "CheckpointResponder",
    "ExecutionEngine",
    "LLMToolRunner",
    "SummaryWriter",
    "ToolRun",
    "ToolRunner",
]
