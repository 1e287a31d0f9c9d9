"""Error taxonomy shared by the parser, engine, and persistence layers."""

from __future__ import annotations

from pathlib import Path

__all__ = [
    "CommitError",
    "ParseError",
    "PersistenceError",
    "PlanExecutionError",
    "TaskCancelled",
    "ToolInvocationError",
    "VerificationFailure",
]


class PlanExecutionError(RuntimeError):
    """Base class for every error raised by the plan executor."""


class ParseError(PlanExecutionError):
    """Raised when a plan document is malformed. Fatal before execution."""

    def __init__(self, section: str, message: str) -> None:
        super().__init__(f"Malformed plan ({section}): {message}")
        self.section = section


class ToolInvocationError(PlanExecutionError):
    """Raised when the tool-calling capability fails for a single task."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class VerificationFailure(PlanExecutionError):
    """Raised when a checkpoint's ``verify`` clause does not hold."""

    def __init__(self, message: str, *, verify_output: str = "") -> None:
        super().__init__(message)
        self.verify_output = verify_output


class CommitError(PlanExecutionError):
    """Raised when staging or committing fails. Never fails the task."""


class PersistenceError(PlanExecutionError):
    """Raised when the session or issue file cannot be read or written."""

    def __init__(self, path: Path | str, operation: str, reason: str) -> None:
        super().__init__(f"Could not {operation} {path}: {reason}")
        self.path = Path(path)
        self.operation = operation


class TaskCancelled(PlanExecutionError):
    """Raised inside the engine when the cancellation token fires mid-task."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(f"Task cancelled: {reason}")
        self.reason = reason
