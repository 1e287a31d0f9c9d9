"""Error classification and generation of fix plans from open issues."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

import yaml

from ..errors import PersistenceError
from ..issues.logger import IssueStore
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..tools.text import DEFAULT_CONTEXT_CHARS, truncate_for_context
from .parser import parse_plan
from .schema import Issue, IssueImpact, Plan, phase_number

__all__ = [
    "ErrorKind",
    "FixPlanDocument",
    "FixPlanGenerator",
    "FixTaskElaboration",
    "NO_OUTPUT_INSTRUCTION",
    "classify_error",
    "find_error_signature",
    "fix_instruction",
]

LOGGER = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Tagged classification of captured failure output."""

    TEST_FAILURE = "test-failure"
    TYPE_ERROR = "type-error"
    BUILD_ERROR = "build-error"
    RUNTIME_ERROR = "runtime-error"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class _Matcher:
    kind: ErrorKind
    pattern: re.Pattern[str]


def _matcher(kind: ErrorKind, pattern: str) -> _Matcher:
    return _Matcher(kind, re.compile(pattern, re.IGNORECASE | re.MULTILINE))


# First match wins.
_MATCHERS: tuple[_Matcher, ...] = (
    _matcher(ErrorKind.TEST_FAILURE, r"\btests?\s+failed\b"),
    _matcher(ErrorKind.TEST_FAILURE, r"^FAILED\s+\S+"),
    _matcher(ErrorKind.TEST_FAILURE, r"\bAssertionError\b"),
    _matcher(ErrorKind.TEST_FAILURE, r"\bassertion\b"),
    _matcher(ErrorKind.TEST_FAILURE, r"\bexpect\("),
    _matcher(ErrorKind.TEST_FAILURE, r"\b\d+\s+failed\b"),
    _matcher(ErrorKind.TYPE_ERROR, r"\berror\s+TS\d+"),
    _matcher(ErrorKind.TYPE_ERROR, r"\btypescript\b"),
    _matcher(ErrorKind.TYPE_ERROR, r"\bincompatible types?\b"),
    _matcher(ErrorKind.TYPE_ERROR, r"^\S+\.pyi?:\d+: error:"),
    _matcher(ErrorKind.BUILD_ERROR, r"\bbuild\s+failed\b"),
    _matcher(ErrorKind.BUILD_ERROR, r"\bcompilation\b"),
    _matcher(ErrorKind.BUILD_ERROR, r"\bfailed to compile\b"),
    _matcher(ErrorKind.RUNTIME_ERROR, r"\b(?:Type|Reference|Syntax|Name|Attribute|Key|Index|Value|ZeroDivision)Error\b"),
    _matcher(ErrorKind.RUNTIME_ERROR, r"Traceback \(most recent call last\)"),
    _matcher(ErrorKind.RUNTIME_ERROR, r"\bUnhandled(?:Promise)?Rejection\b"),
)

_INSTRUCTIONS = {
    ErrorKind.TEST_FAILURE: (
        "Review the failing assertions above, decide whether the code or the expectation "
        "is wrong, and fix the cause so the tests pass."
    ),
    ErrorKind.TYPE_ERROR: "Resolve the reported errors at the files and lines shown above.",
    ErrorKind.BUILD_ERROR: "Fix compilation so the build shown above completes.",
    ErrorKind.RUNTIME_ERROR: "Trace the stack shown above to the failing call and fix the underlying defect.",
    ErrorKind.UNKNOWN: "Debug using the output above: identify the failing step and fix its cause.",
}

NO_OUTPUT_INSTRUCTION = "Review the error, adjust the plan or retry manually."

_PLAN_TAG_RE = re.compile(
    r"<(/?)(action|tasks|task|verify|done|files|name|options|option|decision)\b",
    re.IGNORECASE,
)
_IMPACT_ORDER = {IssueImpact.BLOCKING: 0, IssueImpact.MAJOR: 1, IssueImpact.MINOR: 2}


def classify_error(output: str) -> ErrorKind:
    """Return the first :class:`ErrorKind` whose matcher fires on ``output``."""
    for matcher in _MATCHERS:
        if matcher.pattern.search(output or ""):
            return matcher.kind
    return ErrorKind.UNKNOWN


def find_error_signature(output: str) -> Optional[str]:
    """Return the full line containing the first recognised error signature."""
    for matcher in _MATCHERS:
        match = matcher.pattern.search(output or "")
        if match:
            start = output.rfind("\n", 0, match.start()) + 1
            end = output.find("\n", match.end())
            return output[start : end if end != -1 else len(output)].strip()
    return None


def fix_instruction(output: str) -> str:
    if not (output or "").strip():
        return NO_OUTPUT_INSTRUCTION
    return _INSTRUCTIONS[classify_error(output)]


def _neutralise_plan_tags(text: str) -> str:
    return _PLAN_TAG_RE.sub(lambda match: f"<{match.group(1)}\\{match.group(2)}", text)


@dataclass(slots=True)
class FixTaskElaboration:
    """Structured response requested from the model for one fix task."""

    steps: List[str] = field(default_factory=list)
    verify: str = ""


@dataclass(slots=True)
class FixPlanDocument:
    path: Path
    content: str
    plan: Plan
    issues: List[Issue]


class FixPlanGenerator:
    """Builds a ``{phase}-{plan}-FIX-PLAN.md`` from the open issues of a plan."""

    def __init__(
        self,
        store: IssueStore,
        *,
        client: Optional[LLMClient] = None,
        max_output_chars: int = DEFAULT_CONTEXT_CHARS,
    ) -> None:
        self.store = store
        self.client = client
        self.max_output_chars = max_output_chars

    def collect_issues(self, plan: Plan) -> List[Issue]:
        """Return open issues for ``plan``'s phase, Blocking first."""
        issues = [
            issue
            for issue in self.store.list_issues(phase=plan.phase)
            if _belongs_to_plan(issue, plan)
        ]
        return sorted(issues, key=lambda issue: _IMPACT_ORDER.get(issue.impact, len(_IMPACT_ORDER)))

    def fix_plan_path(self, plan: Plan, output_dir: Optional[Path] = None) -> Path:
        directory = output_dir or (Path(plan.source_path).parent if plan.source_path else Path.cwd())
        return directory / f"{phase_number(plan.phase)}-{plan.plan_number:02d}-FIX-PLAN.md"

    def generate(self, plan: Plan, *, output_dir: Optional[Path] = None) -> Optional[FixPlanDocument]:
        """Render the fix plan for ``plan``; ``None`` when it has no open issues."""
        issues = self.collect_issues(plan)
        if not issues:
            LOGGER.info("No open issues for plan %s; no fix plan needed", plan.label)
            return None
        path = self.fix_plan_path(plan, output_dir)
        content = self.render(plan, issues)
        fix_plan = parse_plan(content, source_path=path.as_posix())
        return FixPlanDocument(path=path, content=content, plan=fix_plan, issues=issues)

    def write(self, plan: Plan, *, output_dir: Optional[Path] = None) -> Optional[FixPlanDocument]:
        document = self.generate(plan, output_dir=output_dir)
        if document is None:
            return None
        try:
            document.path.parent.mkdir(parents=True, exist_ok=True)
            document.path.write_text(document.content, encoding="utf-8")
        except OSError as error:
            raise PersistenceError(document.path, "write fix plan", str(error)) from error
        LOGGER.info("Wrote fix plan with %d task(s) to %s", len(document.issues), document.path)
        return document

    # -------------------------------------------------------------- rendering
    def render(self, plan: Plan, issues: Sequence[Issue]) -> str:
        header = yaml.safe_dump(
            {"phase": plan.phase, "plan": f"{plan.plan_number:02d}-FIX", "type": "fix"},
            sort_keys=False,
        ).strip()
        blocks = [self._render_task(index, issue) for index, issue in enumerate(issues, start=1)]
        verification = "\n".join(f"- [ ] {issue.id} no longer reproduces" for issue in issues)
        return (
            f"---\n{header}\n---\n\n"
            "<objective>\n"
            f"Fix {len(issues)} issue(s) recorded while executing plan {plan.label}.\n\n"
            f"Purpose: Resolve the failures blocking plan {plan.label} so its work can complete.\n"
            "</objective>\n\n"
            "<tasks>\n\n"
            + "\n\n".join(blocks)
            + "\n\n</tasks>\n\n"
            f"<verification>\n{verification}\n</verification>\n\n"
            "<success_criteria>\n"
            "- Every listed issue is resolved\n"
            "- Resolved issues are closed in the issue store\n"
            "</success_criteria>\n"
        )

    def _render_task(self, index: int, issue: Issue) -> str:
        action = self.build_action(issue)
        elaboration = self._elaborate(self.client, issue) if self.client is not None else None
        verify = f"The failure recorded as {issue.id} no longer occurs."
        if elaboration is not None:
            if elaboration.steps:
                steps = "\n".join(f"{number}. {step}" for number, step in enumerate(elaboration.steps, start=1))
                action = f"{action}\n\nSteps:\n{_neutralise_plan_tags(steps)}"
            if elaboration.verify.strip():
                verify = _neutralise_plan_tags(elaboration.verify.strip())
        title = " ".join((issue.title or "failed task").split())
        return (
            '<task type="auto">\n'
            f"  <name>Task {index}: Fix {issue.id} {_neutralise_plan_tags(title)}</name>\n"
            f"  <files>{', '.join(issue.affected_files)}</files>\n"
            f"  <action>\n{action}\n  </action>\n"
            f"  <verify>{verify}</verify>\n"
            f"  <done>{issue.id} resolved and closed</done>\n"
            "</task>"
        )

    def build_action(self, issue: Issue) -> str:
        """Return the action text: issue context, verbatim output, then the instruction."""
        output = truncate_for_context(issue.full_output or "", self.max_output_chars)
        lines = [f"Fix {issue.id}: {' '.join((issue.title or '').split())}".rstrip(": ")]
        if issue.description:
            lines.extend(["", f"Error: {_neutralise_plan_tags(' '.join(issue.description.split()))}"])
        if output.strip():
            fence = "`" * max(3, max((len(run) for run in re.findall(r"`+", output)), default=0) + 1)
            lines.extend(["", "Captured output:", f"{fence}text", output, fence])
        lines.extend(["", fix_instruction(output)])
        return "\n".join(lines)

    def _elaborate(self, client: LLMClient, issue: Issue) -> Optional[FixTaskElaboration]:
        prompt = (
            "Propose concrete, ordered steps to fix the following failure.\n"
            f"Issue: {issue.id} ({issue.title})\n"
            f"Affected files: {', '.join(issue.affected_files) or 'unknown'}\n"
            f"Output:\n{truncate_for_context(issue.full_output, self.max_output_chars)}\n"
            "Return JSON with 'steps' (list of strings) and 'verify' (one sentence)."
        )
        request = LLMRequest(
            prompt=prompt,
            response_model=FixTaskElaboration,
            metadata={"phase": "fix-elaboration", "issue": issue.id},
        )
        try:
            return client.invoke(request)
        except LLMClientError as error:
            LOGGER.warning("Model elaboration for %s failed; using template: %s", issue.id, error)
            return None


def _belongs_to_plan(issue: Issue, plan: Plan) -> bool:
    if not issue.plan_path or not plan.source_path:
        return True
    return Path(issue.plan_path).name == Path(plan.source_path).name
