from __future__ import annotations

import inspect
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Sequence, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from planexec.engine.runner import ToolRun  # noqa: E402
from planexec.tools.vcs import GitRepository  # noqa: E402

SAMPLE_PLAN = textwrap.dedent(
    """
    ---
    phase: 04-execution
    plan: 02
    type: execute
    ---

    <objective>
    Wire the parser into the command line.

    Purpose: Let operators run plans without editing code.
    </objective>

    <tasks>

    <task type="auto">
      <name>Task 1: Add parser module</name>
      <files>src/a.py</files>
      <action>Create src/a.py with a parse() function.</action>
      <verify>parse() returns a list</verify>
      <done>Parser exists</done>
    </task>

    <task type="checkpoint:human-verify">
      <name>Task 2: Run the parser tests</name>
      <files>src/b.py, tests/test_b.py</files>
      <action>Run the parser test-suite and report.</action>
      <verify>All parser tests pass</verify>
      <done>Tests are green</done>
    </task>

    <task type="auto">
      <name>Task 3: Document the parser</name>
      <files>src/c.py</files>
      <action>Write usage notes into src/c.py.</action>
      <verify>Docstring present</verify>
      <done>Documented</done>
    </task>

    </tasks>

    <verification>
    - [ ] Parser importable
    - [x] Tests pass
    </verification>

    <success_criteria>
    - All tasks completed
    - Parser documented
    </success_criteria>
    """
).lstrip()


@dataclass(slots=True)
class GitWorkspace:
    """A throwaway git repository with a ``.planning`` directory."""

    root: Path
    repo: GitRepository

    @property
    def planning(self) -> Path:
        return self.root / ".planning"

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def write_plan(self, content: str = SAMPLE_PLAN, name: str = "04-02-PLAN.md") -> Path:
        return self.write(f".planning/phases/04-execution/{name}", content)


@pytest.fixture()
def git_workspace(tmp_path: Path) -> GitWorkspace:
    """Create an initialised git repository for engine and commit tests."""

    repo = GitRepository.initialise(tmp_path / "workspace")
    return GitWorkspace(root=repo.root, repo=repo)


@pytest.fixture()
def sample_plan_text() -> str:
    return SAMPLE_PLAN


Handler = Callable[[str, Sequence[str]], Any]


@dataclass(slots=True)
class ScriptedRunner:
    """Tool runner double driven by a handler; the handler may be sync or async."""

    handler: Handler
    calls: List[Tuple[str, Tuple[str, ...]]] = field(default_factory=list)

    async def run(self, instruction: str, files: Sequence[str]) -> ToolRun:
        self.calls.append((instruction, tuple(files)))
        result = self.handler(instruction, files)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return ToolRun(output=result)
        return result


@pytest.fixture()
def scripted_runner() -> Callable[[Handler], ScriptedRunner]:
    return ScriptedRunner
