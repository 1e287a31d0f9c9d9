from __future__ import annotations

import textwrap

import pytest

from planexec.errors import ParseError, PersistenceError
from planexec.planning.parser import load_plan, parse_plan
from planexec.planning.schema import TaskKind


def _plan(tasks: str, header: str = "phase: 02-core\nplan: 03") -> str:
    return f"---\n{header}\n---\n\n<objective>Do things.</objective>\n\n<tasks>\n{textwrap.dedent(tasks)}\n</tasks>\n"


def test_parse_sample_plan_reads_header_and_tasks(sample_plan_text: str) -> None:
    plan = parse_plan(sample_plan_text, source_path="plans/04-02-PLAN.md")

    assert plan.phase == "04-execution"
    assert plan.plan_number == 2
    assert plan.label == "04-02"
    assert plan.source_path == "plans/04-02-PLAN.md"
    assert plan.objective == "Wire the parser into the command line."
    assert plan.purpose == "Let operators run plans without editing code."
    assert [task.id for task in plan.tasks] == [1, 2, 3]
    assert [task.kind for task in plan.tasks] == [
        TaskKind.AUTO,
        TaskKind.CHECKPOINT_VERIFY,
        TaskKind.AUTO,
    ]
    assert plan.tasks[0].name == "Add parser module"
    assert plan.tasks[1].files == ("src/b.py", "tests/test_b.py")
    assert plan.verification == ("Parser importable", "Tests pass")
    assert plan.success_criteria == ("All tasks completed", "Parser documented")


def test_placeholder_file_entries_are_dropped() -> None:
    content = _plan(
        """
        <task type="auto">
          <name>Touch files</name>
          <files>src/real.py, [affected files if known], path/to/file.py, TBD, docs/guide.md</files>
          <action>Edit.</action>
        </task>
        """
    )

    plan = parse_plan(content)

    assert plan.tasks[0].files == ("src/real.py", "docs/guide.md")


def test_yaml_style_file_list_is_accepted() -> None:
    content = _plan(
        """
        <task type="auto">
          <name>Touch files</name>
          <files>[src/one.py, src/two.py]</files>
          <action>Edit.</action>
        </task>
        """
    )

    assert parse_plan(content).tasks[0].files == ("src/one.py", "src/two.py")


def test_decision_task_options_and_unknown_types() -> None:
    content = _plan(
        """
        <task type="checkpoint:decision">
          <name>Pick a store</name>
          <decision>Which backend?</decision>
          <options>
            <option id="sqlite"><name>SQLite</name><description>Embedded</description></option>
            <option id="postgres"><name>Postgres</name></option>
          </options>
        </task>
        <task type="mystery">
          <name>Task 2: Fallback kind</name>
          <action>Run.</action>
        </task>
        """
    )

    plan = parse_plan(content)
    decision, fallback = plan.tasks

    assert decision.kind is TaskKind.CHECKPOINT_DECISION
    assert decision.action == ""
    assert decision.decision == "Which backend?"
    assert [option.id for option in decision.options] == ["sqlite", "postgres"]
    assert decision.options[0].description == "Embedded"
    assert fallback.kind is TaskKind.AUTO
    assert fallback.name == "Fallback kind"


def test_fenced_output_inside_an_action_is_opaque() -> None:
    content = _plan(
        """
        <task type="auto">
        <name>Task 1: Fix markup test</name>
        <files>src/ui.py</files>
        <action>
        Captured output:
        ```text
        expected </action> then <option id="x"><name>X</name></option> and </task>
        ```
        Review the assertions.
        </action>
        <verify>Markup test passes</verify>
        </task>
        """
    )

    (task,) = parse_plan(content).tasks

    assert task.name == "Fix markup test"
    assert 'expected </action> then <option id="x"><name>X</name></option> and </task>' in task.action
    assert task.action.endswith("Review the assertions.")
    assert task.verify == "Markup test passes"


def test_fix_plan_number_keeps_its_tag() -> None:
    content = _plan(
        """
        <task type="auto"><name>Fix</name><action>Fix it.</action></task>
        """,
        header="phase: 04-execution\nplan: 02-FIX\ntype: fix",
    )

    plan = parse_plan(content)

    assert plan.plan_number == 2
    assert plan.plan_tag == "FIX"
    assert plan.label == "04-02-FIX"


@pytest.mark.parametrize(
    ("content", "section"),
    [
        ("<tasks><task><name>x</name><action>y</action></task></tasks>", "frontmatter"),
        ("---\nplan: 01\n---\n<tasks><task><name>x</name><action>y</action></task></tasks>", "frontmatter"),
        ("---\nphase: 01-a\n---\n<objective>none</objective>", "tasks"),
        ("---\nphase: 01-a\n---\n<tasks>\n</tasks>", "tasks"),
        ("---\nphase: 01-a\n---\n<tasks><task type=\"auto\"><name>x</name></task></tasks>", "task 1"),
        ("---\nphase: [unclosed\n---\n<tasks></tasks>", "frontmatter"),
    ],
)
def test_malformed_plans_raise_parse_error(content: str, section: str) -> None:
    with pytest.raises(ParseError) as excinfo:
        parse_plan(content)

    assert excinfo.value.section == section


def test_load_plan_reports_missing_file(tmp_path) -> None:
    with pytest.raises(PersistenceError):
        load_plan(tmp_path / "missing-PLAN.md")


def test_load_plan_records_source_path(tmp_path, sample_plan_text: str) -> None:
    path = tmp_path / "04-02-PLAN.md"
    path.write_text(sample_plan_text, encoding="utf-8")

    plan = load_plan(path)

    assert plan.source_path == path.as_posix()
    assert len(plan.tasks) == 3
