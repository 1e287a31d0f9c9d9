from __future__ import annotations

import json

import pytest

from planexec.issues.logger import IssueLogger, IssueStore
from planexec.models.llm_client import CallableLLMClient, LLMTransportError
from planexec.planning.fix_plan import (
    NO_OUTPUT_INSTRUCTION,
    ErrorKind,
    FixPlanGenerator,
    classify_error,
    find_error_signature,
    fix_instruction,
)
from planexec.planning.parser import parse_plan
from planexec.planning.schema import TaskFailure, TaskKind

PLAN_PATH = ".planning/phases/04-execution/04-02-PLAN.md"


@pytest.mark.parametrize(
    ("output", "kind"),
    [
        ("FAILED tests/test_b.py::test_value - AssertionError: assert 1 == 2", ErrorKind.TEST_FAILURE),
        ("== 2 failed, 5 passed in 0.10s ==", ErrorKind.TEST_FAILURE),
        ("src/app.ts(4,7): error TS2322: Type 'string' is not assignable", ErrorKind.TYPE_ERROR),
        ("src/planexec/cli.py:12: error: Incompatible return value", ErrorKind.TYPE_ERROR),
        ("Build failed with 3 errors", ErrorKind.BUILD_ERROR),
        ("Traceback (most recent call last):\n  File \"x.py\"\nKeyError: 'name'", ErrorKind.RUNTIME_ERROR),
        ("all good", ErrorKind.UNKNOWN),
        ("", ErrorKind.UNKNOWN),
    ],
)
def test_classify_error(output: str, kind: ErrorKind) -> None:
    assert classify_error(output) is kind


def test_error_signature_is_the_full_line() -> None:
    output = "collected 3 items\nFAILED tests/test_b.py::test_value - AssertionError: assert 1 == 2\ndone"

    assert find_error_signature(output) == "FAILED tests/test_b.py::test_value - AssertionError: assert 1 == 2"
    assert find_error_signature("nothing to see") is None


def test_fix_instruction_depends_on_kind() -> None:
    assert fix_instruction("") == NO_OUTPUT_INSTRUCTION
    assert "tests pass" in fix_instruction("1 failed")
    assert "files and lines" in fix_instruction("error TS2304: Cannot find name")
    assert "build" in fix_instruction("failed to compile")
    assert "stack" in fix_instruction("ZeroDivisionError: division by zero")
    assert "Debug" in fix_instruction("something odd happened")


def _record(store: IssueStore, task_id: int, output: str, *, plan_path: str = PLAN_PATH, phase: str = "04-execution") -> None:
    IssueLogger(store).log_failure(
        TaskFailure(
            plan_path=plan_path,
            task_id=task_id,
            task_name=f"Task number {task_id}",
            error="Verification failed",
            full_output=output,
            files=[f"src/mod{task_id}.py"],
            phase=phase,
        )
    )


def _plan(tmp_path, sample_plan_text):
    path = tmp_path / "04-02-PLAN.md"
    path.write_text(sample_plan_text, encoding="utf-8")
    return parse_plan(sample_plan_text, source_path=path.as_posix())


def test_generate_builds_parseable_fix_plan(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    signature = "FAILED tests/test_b.py::test_value - AssertionError: assert 1 == 2"
    _record(store, 2, f"collected 3 items\n{signature}\n1 failed")
    _record(store, 3, "")
    _record(store, 1, "irrelevant", phase="05-other")
    _record(store, 4, "other plan", plan_path=".planning/phases/04-execution/04-01-PLAN.md")
    plan = _plan(tmp_path, sample_plan_text)

    document = FixPlanGenerator(store).generate(plan)

    assert document is not None
    assert document.path == tmp_path / "04-02-FIX-PLAN.md"
    assert [issue.id for issue in document.issues] == ["EXE-04-03", "EXE-04-02"]
    fix_plan = document.plan
    assert fix_plan.phase == "04-execution"
    assert fix_plan.label == "04-02-FIX"
    assert [task.kind for task in fix_plan.tasks] == [TaskKind.AUTO, TaskKind.AUTO]
    assert fix_plan.tasks[0].files == ("src/mod3.py",)
    assert NO_OUTPUT_INSTRUCTION not in fix_plan.tasks[1].action
    assert signature in fix_plan.tasks[1].action
    assert fix_plan.tasks[1].action.rstrip().endswith(fix_instruction(signature))


def test_output_containing_plan_tags_stays_parseable(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    _record(store, 2, "expected </action> but got <task type=\"auto\">\nAssertionError")
    plan = _plan(tmp_path, sample_plan_text)

    document = FixPlanGenerator(store).generate(plan)

    assert len(document.plan.tasks) == 1
    action = document.plan.tasks[0].action
    assert "expected </action> but got <task type=\"auto\">\nAssertionError" in action


def test_markup_in_the_error_signature_is_quoted_verbatim(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    signature = "FAILED tests/test_ui.py::test_render - AssertionError: expected '<option value=1>' got '<name>'"
    _record(store, 2, f"collected 1 item\n{signature}\n1 failed")
    plan = _plan(tmp_path, sample_plan_text)

    document = FixPlanGenerator(store).generate(plan)

    task = document.plan.tasks[0]
    assert find_error_signature(f"collected 1 item\n{signature}") == signature
    assert signature in task.action
    assert task.name == "Fix EXE-04-02 Task number 2"
    assert task.files == ("src/mod2.py",)


def test_generate_returns_none_without_open_issues(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    _record(store, 2, "1 failed")
    store.close_issue("EXE-04-02")

    assert FixPlanGenerator(store).generate(_plan(tmp_path, sample_plan_text)) is None


def test_write_persists_document(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    _record(store, 2, "1 failed")

    document = FixPlanGenerator(store).write(_plan(tmp_path, sample_plan_text))

    assert document.path.exists()
    assert parse_plan(document.path.read_text(encoding="utf-8")).plan_tag == "FIX"


def test_model_elaboration_adds_steps(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    _record(store, 2, "1 failed")
    seen = []

    def handler(payload):
        seen.append(payload["metadata"]["phase"])
        return json.dumps({"steps": ["Read the assertion", "Fix parse()"], "verify": "pytest -q passes"})

    generator = FixPlanGenerator(store, client=CallableLLMClient(handler))
    task = generator.generate(_plan(tmp_path, sample_plan_text)).plan.tasks[0]

    assert seen == ["fix-elaboration"]
    assert "1. Read the assertion" in task.action
    assert task.verify == "pytest -q passes"


def test_model_failure_falls_back_to_template(tmp_path, sample_plan_text) -> None:
    store = IssueStore(tmp_path / "ISSUES.md")
    _record(store, 2, "1 failed")

    def handler(payload):
        raise LLMTransportError("offline")

    generator = FixPlanGenerator(store, client=CallableLLMClient(handler))
    task = generator.generate(_plan(tmp_path, sample_plan_text)).plan.tasks[0]

    assert "Steps:" not in task.action
    assert task.verify == "The failure recorded as EXE-04-02 no longer occurs."
