"""Durable, deduplicated issue store backed by a Markdown document.

The store keeps one ``### EXE-{phase}-{task}: {title}`` block per issue under
either the ``## Open Issues`` or the ``## Closed Issues`` heading. New entries
are inserted directly under the open heading so the newest issue is read
first. Diagnostic output is kept inside a fenced block whose fence is longer
than any backtick run in the output, which lets the store be parsed back into
:class:`~planexec.planning.schema.Issue` records without ambiguity.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from ..errors import PersistenceError
from ..planning.schema import Issue, IssueImpact, TaskFailure, phase_number, utc_now
from ..planning.task_filters import filter_placeholder_paths, find_path_tokens
from ..tools.text import DEFAULT_CONTEXT_CHARS, truncate_for_context

__all__ = [
    "IssueLogger",
    "IssueStore",
    "LogOutcome",
    "LogResult",
    "issue_id_for",
    "render_issue_entry",
]

LOGGER = logging.getLogger(__name__)

DOCUMENT_TITLE = "# Project Issues Log"
OPEN_HEADER = "## Open Issues"
CLOSED_HEADER = "## Closed Issues"
FOOTER_RULE = "---"
_INTRO = (
    "Failures recorded while executing plans. Each entry keeps the diagnostic\n"
    "output captured at the time of failure so a fix plan can be generated from it."
)
_NO_FILES = "None identified"
_MAX_EXTRACTED_FILES = 10

_ENTRY_HEADING_RE = re.compile(r"^###\s+(?P<id>[A-Z]+-[\w.]+-\d+)\s*:\s*(?P<title>.*)$")
_FIELD_RE = re.compile(r"^-\s+\*\*(?P<key>[^*]+?):\*\*\s*(?P<value>.*)$")
_FENCE_RE = re.compile(r"^(?P<fence>`{3,})")
_LINE_SUFFIX_RE = re.compile(r":\d+(?::\d+)?$")


def issue_id_for(phase: str, task_id: int) -> str:
    """Return ``EXE-{phase}-{task}`` with the task id padded to two digits."""
    return f"EXE-{phase_number(phase)}-{task_id:02d}"


class LogOutcome(str, Enum):
    """Result of :meth:`IssueLogger.log_failure`."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    IO_ERROR = "ioError"


@dataclass(slots=True)
class LogResult:
    outcome: LogOutcome
    issue_id: str
    error: Optional[str] = None


@dataclass(slots=True)
class _Entry:
    issue_id: str
    lines: List[str]


@dataclass(slots=True)
class _IssueDocument:
    """Issue store split into preamble, open entries and closed entries."""

    preamble: List[str] = field(default_factory=list)
    open_intro: List[str] = field(default_factory=list)
    open_entries: List[_Entry] = field(default_factory=list)
    closed_intro: List[str] = field(default_factory=list)
    closed_entries: List[_Entry] = field(default_factory=list)

    def all_entries(self) -> Iterable[tuple[_Entry, bool]]:
        for entry in self.open_entries:
            yield entry, True
        for entry in self.closed_entries:
            yield entry, False

    def render(self) -> str:
        preamble = _trim_blank(self.preamble) or [DOCUMENT_TITLE, "", _INTRO]
        parts: List[str] = ["\n".join(preamble), OPEN_HEADER]
        parts.extend(_section_blocks(self.open_intro, self.open_entries))
        parts.append(CLOSED_HEADER)
        parts.extend(_section_blocks(self.closed_intro, self.closed_entries))
        parts.append(FOOTER_RULE)
        parts.append(f"*Last updated: {utc_now().strftime('%Y-%m-%d %H:%M UTC')}*")
        return "\n\n".join(parts) + "\n"


def _section_blocks(intro: List[str], entries: List[_Entry]) -> List[str]:
    blocks: List[str] = []
    intro_text = "\n".join(_trim_blank(intro))
    if intro_text:
        blocks.append(intro_text)
    blocks.extend("\n".join(_trim_blank(entry.lines)) for entry in entries)
    return blocks


def _trim_blank(lines: List[str]) -> List[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _split_document(content: str) -> _IssueDocument:
    """Split ``content`` into sections, ignoring headings inside fenced output."""
    document = _IssueDocument()
    section = "preamble"
    current: Optional[_Entry] = None
    fence = ""
    saw_footer = False

    def _sink() -> List[str]:
        if current is not None:
            return current.lines
        if section == "open":
            return document.open_intro
        if section == "closed":
            return document.closed_intro
        return document.preamble

    for line in content.splitlines():
        stripped = line.strip()
        if fence:
            _sink().append(line)
            if stripped == fence:
                fence = ""
            continue
        if saw_footer:
            continue
        fence_match = _FENCE_RE.match(stripped)
        if fence_match:
            fence = fence_match.group("fence")
            _sink().append(line)
            continue
        if stripped == OPEN_HEADER:
            section, current = "open", None
            continue
        if stripped == CLOSED_HEADER:
            section, current = "closed", None
            continue
        if section == "closed" and stripped == FOOTER_RULE:
            saw_footer = True
            current = None
            continue
        heading = _ENTRY_HEADING_RE.match(stripped)
        if heading and section in {"open", "closed"}:
            current = _Entry(issue_id=heading.group("id"), lines=[line])
            if section == "open":
                document.open_entries.append(current)
            else:
                document.closed_entries.append(current)
            continue
        _sink().append(line)
    return document


def _parse_entry(entry: _Entry, *, is_open: bool) -> Issue:
    heading = _ENTRY_HEADING_RE.match(entry.lines[0].strip())
    title = heading.group("title").strip() if heading else ""
    values: dict[str, str] = {}
    output_lines: List[str] = []
    fence = ""
    in_output = False
    for line in entry.lines[1:]:
        stripped = line.strip()
        if fence:
            if stripped == fence:
                fence = ""
                in_output = False
                continue
            if in_output:
                output_lines.append(line)
            continue
        fence_match = _FENCE_RE.match(stripped)
        if fence_match:
            fence = fence_match.group("fence")
            in_output = True
            continue
        field_match = _FIELD_RE.match(stripped)
        if field_match:
            values[field_match.group("key").strip().lower()] = field_match.group("value").strip()

    files_value = values.get("affected files", "")
    affected = [] if files_value in {"", _NO_FILES} else [item.strip() for item in files_value.split(",") if item.strip()]
    task_value = values.get("task id", "")
    try:
        impact = IssueImpact(values.get("impact", IssueImpact.BLOCKING.value))
    except ValueError:
        impact = IssueImpact.BLOCKING
    return Issue(
        id=entry.issue_id,
        title=title,
        description=values.get("description", ""),
        impact=impact,
        phase=values.get("phase", ""),
        task_id=int(task_value) if task_value.isdigit() else None,
        plan_path=values.get("plan") or None,
        discovered=values.get("discovered") or None,
        affected_files=affected,
        full_output="\n".join(output_lines),
        is_open=is_open,
    )


class IssueStore:
    """Read/modify/write access to the Markdown issue store."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def read(self) -> str:
        """Return the store's text, or an empty string when it does not exist yet."""
        if not self.path.exists():
            return ""
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise PersistenceError(self.path, "read issue store", str(error)) from error

    def write(self, content: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content, encoding="utf-8")
        except OSError as error:
            raise PersistenceError(self.path, "write issue store", str(error)) from error

    def initialise(self) -> bool:
        """Write an empty store when none exists. Returns True when a file was created."""
        if self.path.exists():
            return False
        self.write(_IssueDocument().render())
        return True

    def contains(self, issue_id: str) -> bool:
        """Return True when an entry headed ``### {issue_id}:`` exists (open or closed)."""
        document = _split_document(self.read())
        return any(entry.issue_id == issue_id for entry, _ in document.all_entries())

    def list_issues(self, *, include_closed: bool = False, phase: Optional[str] = None) -> List[Issue]:
        """Parse the store back into :class:`Issue` records."""
        document = _split_document(self.read())
        issues: List[Issue] = []
        for entry, is_open in document.all_entries():
            if not is_open and not include_closed:
                continue
            issue = _parse_entry(entry, is_open=is_open)
            if phase is not None and phase_number(issue.phase or "") != phase_number(phase):
                continue
            issues.append(issue)
        return issues

    def get(self, issue_id: str) -> Optional[Issue]:
        """Return the open or closed issue with ``issue_id``, if recorded."""
        for issue in self.list_issues(include_closed=True):
            if issue.id == issue_id:
                return issue
        return None

    def insert_open(self, issue_id: str, entry_text: str) -> bool:
        """Insert an entry under the open heading. Returns False if ``issue_id`` exists."""
        document = _split_document(self.read())
        if any(entry.issue_id == issue_id for entry, _ in document.all_entries()):
            return False
        document.open_entries.insert(0, _Entry(issue_id=issue_id, lines=entry_text.splitlines()))
        self.write(document.render())
        return True

    def close_issue(self, issue_id: str) -> bool:
        """Move ``issue_id`` from the open to the closed section."""
        document = _split_document(self.read())
        for index, entry in enumerate(document.open_entries):
            if entry.issue_id == issue_id:
                document.open_entries.pop(index)
                entry.lines.append(f"- **Closed:** {utc_now().isoformat(timespec='seconds')}")
                document.closed_entries.insert(0, entry)
                self.write(document.render())
                LOGGER.info("Closed issue %s", issue_id)
                return True
        return False


def _fence_for(text: str) -> str:
    longest = max((len(run) for run in re.findall(r"`+", text)), default=0)
    return "`" * max(3, longest + 1)


def render_issue_entry(issue: Issue) -> str:
    """Render ``issue`` as a Markdown entry block."""
    files = ", ".join(issue.affected_files) if issue.affected_files else _NO_FILES
    fence = _fence_for(issue.full_output)
    lines = [
        f"### {issue.id}: {issue.title}",
        "",
        f"- **Discovered:** {issue.discovered or ''}",
        "- **Type:** Execution Failure",
        f"- **Description:** {' '.join(issue.description.split())}",
        f"- **Impact:** {issue.impact.value}",
        f"- **Phase:** {issue.phase}",
        f"- **Task ID:** {issue.task_id if issue.task_id is not None else ''}",
        f"- **Plan:** {issue.plan_path or ''}",
        f"- **Affected Files:** {files}",
        "",
        "**Full Error Output:**",
        "",
        f"{fence}text",
        issue.full_output,
        fence,
    ]
    return "\n".join(lines)


class IssueLogger:
    """Turn :class:`TaskFailure` records into persisted issues, at most once per id."""

    def __init__(self, store: IssueStore, *, max_output_chars: int = DEFAULT_CONTEXT_CHARS) -> None:
        self.store = store
        self.max_output_chars = max_output_chars

    def build_issue(self, failure: TaskFailure) -> Issue:
        combined = failure.full_output or ""
        verify_output = (failure.verify_output or "").strip()
        if verify_output and verify_output not in combined:
            combined = f"{combined.rstrip()}\n\nVerification output:\n{verify_output}".strip()
        if not combined.strip():
            combined = failure.error

        files = filter_placeholder_paths(failure.files)
        if not files:
            extracted = [_LINE_SUFFIX_RE.sub("", token) for token in find_path_tokens(combined)]
            files = filter_placeholder_paths(extracted)[:_MAX_EXTRACTED_FILES]

        return Issue(
            id=issue_id_for(failure.phase, failure.task_id),
            title=failure.task_name,
            description=failure.error,
            impact=IssueImpact.BLOCKING,
            phase=failure.phase,
            task_id=failure.task_id,
            plan_path=failure.plan_path,
            discovered=failure.timestamp.isoformat(timespec="seconds"),
            affected_files=files,
            full_output=truncate_for_context(combined, self.max_output_chars),
        )

    def log_failure(self, failure: TaskFailure) -> LogResult:
        """Persist ``failure`` unless its issue id is already recorded."""
        issue = self.build_issue(failure)
        try:
            created = self.store.insert_open(issue.id, render_issue_entry(issue))
        except PersistenceError as error:
            LOGGER.error("Failed to record issue %s: %s", issue.id, error)
            return LogResult(LogOutcome.IO_ERROR, issue.id, str(error))
        if not created:
            LOGGER.info("Issue %s already recorded; skipping duplicate", issue.id)
            return LogResult(LogOutcome.DUPLICATE, issue.id)
        LOGGER.info("Recorded issue %s in %s", issue.id, self.store.path)
        return LogResult(LogOutcome.CREATED, issue.id)
