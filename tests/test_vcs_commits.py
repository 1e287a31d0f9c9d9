from __future__ import annotations

import asyncio

import pytest

from planexec.planning.parser import parse_plan
from planexec.planning.schema import Task
from planexec.tools.vcs import (
    GitCommitService,
    GitError,
    GitRepository,
    build_commit_message,
    detect_commit_type,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Add parser module", "feat"),
        ("Fix crash on empty input", "fix"),
        ("Rename helpers", "refactor"),
        ("Update README", "docs"),
    ],
)
def test_detect_commit_type(name: str, expected: str) -> None:
    assert detect_commit_type(name) == expected


def test_build_commit_message_is_deterministic() -> None:
    message = build_commit_message("04-execution", 2, "Task 1: Add parser module")

    assert message == "feat(04-02): add parser module"
    assert build_commit_message("04-execution", 2, "Task 1: Add parser module") == message


def test_commit_task_commits_only_declared_files(git_workspace, sample_plan_text) -> None:
    plan = parse_plan(sample_plan_text)
    git_workspace.write("src/a.py", "def parse():\n    return []\n")
    git_workspace.write("notes.txt", "scratch\n")
    service = GitCommitService(git_workspace.repo)

    result = asyncio.run(service.commit_task(plan, plan.tasks[0]))

    assert result.committed
    assert result.hash == git_workspace.repo.head()
    assert result.staged == ("src/a.py",)
    history = asyncio.run(service.history(1))
    assert history[0].message == "feat(04-02): add parser module"
    pending = [path.as_posix() for path in git_workspace.repo.working_tree_changes()]
    assert pending == ["notes.txt"]


def test_commit_task_without_existing_files_commits_nothing(git_workspace, sample_plan_text) -> None:
    plan = parse_plan(sample_plan_text)
    service = GitCommitService(git_workspace.repo)
    before = git_workspace.repo.head()

    result = asyncio.run(service.commit_task(plan, plan.tasks[2]))

    assert not result.committed
    assert result.error is None
    assert git_workspace.repo.head() == before


def test_task_without_files_stages_everything(git_workspace, sample_plan_text) -> None:
    plan = parse_plan(sample_plan_text)
    task = Task(id=9, name="Regenerate fixtures", action="Regenerate.")
    git_workspace.write("fixtures/data.json", "{}\n")
    service = GitCommitService(git_workspace.repo)

    result = asyncio.run(service.commit_task(plan, task))

    assert result.committed
    assert result.staged == ("*",)
    assert git_workspace.repo.working_tree_changes() == []


def test_commit_failure_is_reported_not_raised(git_workspace, sample_plan_text, monkeypatch) -> None:
    plan = parse_plan(sample_plan_text)
    git_workspace.write("src/a.py", "x = 1\n")

    def _fail(self, message, *, paths=()):
        raise GitError("git commit failed: hook rejected")

    monkeypatch.setattr(GitRepository, "commit", _fail)
    service = GitCommitService(git_workspace.repo)

    result = asyncio.run(service.commit_task(plan, plan.tasks[0]))

    assert result.hash is None
    assert "hook rejected" in (result.error or "")


def test_workspace_without_repository_runs_commit_less(tmp_path, sample_plan_text) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "src").mkdir()
    (plain / "src" / "a.py").write_text("x = 1\n", encoding="utf-8")
    plan = parse_plan(sample_plan_text)

    service = GitCommitService.for_workspace(plain)
    result = asyncio.run(service.commit_task(plan, plan.tasks[0]))

    assert not service.enabled
    assert not result.committed
    assert asyncio.run(service.history()) == []


def test_repository_requires_git_directory(tmp_path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_initialise_leaves_an_existing_repository_alone(git_workspace) -> None:
    head = git_workspace.repo.head()

    with pytest.raises(GitError, match="Already a git repository"):
        GitRepository.initialise(git_workspace.root)

    assert git_workspace.repo.head() == head
