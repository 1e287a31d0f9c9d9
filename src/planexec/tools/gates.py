"""Execution gates: map a task kind and execution mode to a gate decision.

The gates are a pure lookup table. The engine consults them before every task
and is solely responsible for acting on the decision (running, asking for
confirmation, or pausing for a human decision).
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from ..planning.schema import TaskKind

__all__ = [
    "ExecutionMode",
    "GATE_TABLE",
    "GateDecision",
    "decide_gate",
    "describe_mode",
    "parse_execution_mode",
    "suspends_for_input",
]


class ExecutionMode(str, Enum):
    """How much human involvement a plan run requires."""

    AUTO_APPROVE = "auto-approve"
    GUIDED = "guided"
    MANUAL = "manual"


class GateDecision(str, Enum):
    """What the engine should do before running a task."""

    PROCEED = "proceed"
    CONFIRM_FIRST = "confirmFirst"
    PAUSE_FOR_DECISION = "pauseForDecision"
    AUTO_SELECT_DEFAULT = "autoSelectDefault"


GATE_TABLE: Mapping[tuple[ExecutionMode, TaskKind], GateDecision] = {
    (ExecutionMode.AUTO_APPROVE, TaskKind.AUTO): GateDecision.PROCEED,
    (ExecutionMode.AUTO_APPROVE, TaskKind.CHECKPOINT_VERIFY): GateDecision.PROCEED,
    (ExecutionMode.AUTO_APPROVE, TaskKind.CHECKPOINT_DECISION): GateDecision.AUTO_SELECT_DEFAULT,
    (ExecutionMode.GUIDED, TaskKind.AUTO): GateDecision.PROCEED,
    (ExecutionMode.GUIDED, TaskKind.CHECKPOINT_VERIFY): GateDecision.PAUSE_FOR_DECISION,
    (ExecutionMode.GUIDED, TaskKind.CHECKPOINT_DECISION): GateDecision.PAUSE_FOR_DECISION,
    (ExecutionMode.MANUAL, TaskKind.AUTO): GateDecision.CONFIRM_FIRST,
    (ExecutionMode.MANUAL, TaskKind.CHECKPOINT_VERIFY): GateDecision.PAUSE_FOR_DECISION,
    (ExecutionMode.MANUAL, TaskKind.CHECKPOINT_DECISION): GateDecision.PAUSE_FOR_DECISION,
}

_MODE_ALIASES: Mapping[str, ExecutionMode] = {
    "auto-approve": ExecutionMode.AUTO_APPROVE,
    "auto_approve": ExecutionMode.AUTO_APPROVE,
    "autoapprove": ExecutionMode.AUTO_APPROVE,
    "yolo": ExecutionMode.AUTO_APPROVE,
    "guided": ExecutionMode.GUIDED,
    "manual": ExecutionMode.MANUAL,
}

_MODE_DESCRIPTIONS: Mapping[ExecutionMode, str] = {
    ExecutionMode.AUTO_APPROVE: "Auto-executing all tasks without confirmation",
    ExecutionMode.GUIDED: "Pausing at checkpoints for review",
    ExecutionMode.MANUAL: "Confirming each task before execution",
}


def decide_gate(kind: TaskKind, mode: ExecutionMode) -> GateDecision:
    """Return the gate decision for ``kind`` under ``mode``."""
    return GATE_TABLE[(ExecutionMode(mode), TaskKind(kind))]


def suspends_for_input(decision: GateDecision) -> bool:
    """Return True when ``decision`` makes the engine wait for a human."""
    return decision in {GateDecision.CONFIRM_FIRST, GateDecision.PAUSE_FOR_DECISION}


def parse_execution_mode(value: str | ExecutionMode | None) -> ExecutionMode:
    """Resolve a configured mode name (``yolo`` is accepted for auto-approve)."""
    if isinstance(value, ExecutionMode):
        return value
    if value is None or not str(value).strip():
        return ExecutionMode.GUIDED
    key = str(value).strip().lower()
    try:
        return _MODE_ALIASES[key]
    except KeyError:
        allowed = ", ".join(mode.value for mode in ExecutionMode)
        raise ValueError(f"Unknown execution mode '{value}' (expected one of: {allowed})") from None


def describe_mode(mode: ExecutionMode) -> str:
    """Return a user-facing description of ``mode``."""
    return _MODE_DESCRIPTIONS[ExecutionMode(mode)]
