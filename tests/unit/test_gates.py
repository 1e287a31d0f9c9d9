from __future__ import annotations

import pytest

from planexec.planning.schema import TaskKind
from planexec.tools.gates import (
    ExecutionMode,
    GateDecision,
    decide_gate,
    describe_mode,
    parse_execution_mode,
    suspends_for_input,
)


@pytest.mark.parametrize(
    ("mode", "kind", "expected"),
    [
        (ExecutionMode.AUTO_APPROVE, TaskKind.AUTO, GateDecision.PROCEED),
        (ExecutionMode.AUTO_APPROVE, TaskKind.CHECKPOINT_VERIFY, GateDecision.PROCEED),
        (ExecutionMode.AUTO_APPROVE, TaskKind.CHECKPOINT_DECISION, GateDecision.AUTO_SELECT_DEFAULT),
        (ExecutionMode.GUIDED, TaskKind.AUTO, GateDecision.PROCEED),
        (ExecutionMode.GUIDED, TaskKind.CHECKPOINT_VERIFY, GateDecision.PAUSE_FOR_DECISION),
        (ExecutionMode.GUIDED, TaskKind.CHECKPOINT_DECISION, GateDecision.PAUSE_FOR_DECISION),
        (ExecutionMode.MANUAL, TaskKind.AUTO, GateDecision.CONFIRM_FIRST),
        (ExecutionMode.MANUAL, TaskKind.CHECKPOINT_VERIFY, GateDecision.PAUSE_FOR_DECISION),
        (ExecutionMode.MANUAL, TaskKind.CHECKPOINT_DECISION, GateDecision.PAUSE_FOR_DECISION),
    ],
)
def test_gate_table(mode: ExecutionMode, kind: TaskKind, expected: GateDecision) -> None:
    assert decide_gate(kind, mode) is expected


def test_auto_approve_never_suspends() -> None:
    for kind in TaskKind:
        assert not suspends_for_input(decide_gate(kind, ExecutionMode.AUTO_APPROVE))


def test_parse_execution_mode_accepts_aliases() -> None:
    assert parse_execution_mode("yolo") is ExecutionMode.AUTO_APPROVE
    assert parse_execution_mode(" Manual ") is ExecutionMode.MANUAL
    assert parse_execution_mode(None) is ExecutionMode.GUIDED
    assert "checkpoints" in describe_mode(ExecutionMode.GUIDED)


def test_parse_execution_mode_rejects_unknown_values() -> None:
    with pytest.raises(ValueError, match="Unknown execution mode"):
        parse_execution_mode("reckless")
