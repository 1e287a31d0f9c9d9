from __future__ import annotations

import pytest
import yaml

from planexec.errors import PersistenceError
from planexec.planning.parser import parse_plan
from planexec.planning.schema import RunState
from planexec.state.session import (
    AgentMarker,
    InMemoryStatePort,
    SessionStateManager,
    SessionStatus,
    YamlStatePort,
)


@pytest.fixture()
def manager(tmp_path) -> SessionStateManager:
    return SessionStateManager.for_paths(tmp_path / "state.yaml", tmp_path / "current-agent-id.txt")


def test_fresh_session_is_clean(manager: SessionStateManager) -> None:
    report = manager.inspect_session()

    assert report.status is SessionStatus.CLEAN
    assert report.state.position.status == "Idle"
    assert manager.resume() is None


def test_pause_then_resume_returns_handoff_until_cleared(manager: SessionStateManager) -> None:
    manager.pause("end of day", "plans/04-02-PLAN.md", note="Continue at task 3", task_index=2)

    first = manager.resume()
    second = manager.resume()

    assert first is not None
    assert first.reason == "end of day"
    assert first.note == "Continue at task 3"
    assert first.task_index == 2
    assert second == first
    assert manager.inspect_session().status is SessionStatus.PAUSED

    assert manager.clear_handoff_after_completion("plans/04-02-PLAN.md")
    assert manager.resume() is None


def test_second_pause_overwrites_first(manager: SessionStateManager) -> None:
    manager.pause("first")
    manager.pause("second")

    assert manager.resume().reason == "second"


def test_clear_keeps_handoff_of_another_plan(manager: SessionStateManager) -> None:
    manager.pause("waiting", "plans/04-01-PLAN.md")

    assert not manager.clear_handoff_after_completion("plans/04-02-PLAN.md")
    assert manager.resume().plan_path == "plans/04-01-PLAN.md"


def test_marker_brackets_a_run(manager: SessionStateManager, sample_plan_text: str) -> None:
    plan = parse_plan(sample_plan_text, source_path="plans/04-02-PLAN.md")

    agent_id = manager.begin_run(plan)

    report = manager.inspect_session()
    assert report.status is SessionStatus.INTERRUPTED
    assert report.agent_id == agent_id
    assert report.state.position.status == RunState.RUNNING.value

    manager.end_run()

    assert manager.inspect_session().status is SessionStatus.CLEAN


def test_update_after_task_records_position(manager: SessionStateManager, sample_plan_text: str) -> None:
    plan = parse_plan(sample_plan_text)

    manager.update_after_task(
        plan, task_index=2, status=RunState.TASK_FAILED, activity="Task 2 failed", progress=67
    )

    state = manager.load()
    assert state.position.phase == "04-execution"
    assert state.position.plan_index == 2
    assert state.position.task_index == 2
    assert state.position.status == "TaskFailed"
    assert state.progress == 67
    assert state.last_activity == "Task 2 failed"
    assert state.last_activity_at is not None


def test_record_completion_stores_artifact(manager: SessionStateManager) -> None:
    manager.record_completion({"plan": "04-02", "succeeded": 3})

    state = manager.load()
    assert state.last_completion == {"plan": "04-02", "succeeded": 3}
    assert state.progress == 100
    assert state.position.status == "Completed"


def test_state_file_is_yaml(tmp_path) -> None:
    port = YamlStatePort(tmp_path / "state.yaml")
    SessionStateManager(port).pause("review", note="check the diff")

    data = yaml.safe_load((tmp_path / "state.yaml").read_text(encoding="utf-8"))

    assert data["handoff"]["reason"] == "review"
    assert data["handoff"]["note"] == "check the diff"


def test_corrupt_state_file_raises_persistence_error(tmp_path) -> None:
    path = tmp_path / "state.yaml"
    path.write_text("- not\n- a mapping\n", encoding="utf-8")

    with pytest.raises(PersistenceError):
        SessionStateManager(YamlStatePort(path)).load()


def test_in_memory_port_and_marker_without_file(tmp_path) -> None:
    manager = SessionStateManager(InMemoryStatePort())
    manager.pause("quick break")

    assert manager.resume().reason == "quick break"
    assert AgentMarker(tmp_path / "missing.txt").read() is None
