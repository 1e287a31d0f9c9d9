"""Tool integrations used by the execution engine."""

from .gates import ExecutionMode, GateDecision, decide_gate, parse_execution_mode
from .text import truncate_for_context
from .vcs import CommitResult, GitCommitService, GitError, GitRepository

__all__ = [
    "CommitResult",
    "ExecutionMode",
    "GateDecision",
    "GitCommitService",
    "GitError",
    "GitRepository",
    "decide_gate",
    "parse_execution_mode",
    "truncate_for_context",
]
