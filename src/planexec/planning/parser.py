"""Parse plan documents into immutable :class:`Plan` records.

A plan document carries a YAML frontmatter header followed by XML-like
sections::

    ---
    phase: 04-execution
    plan: 02
    ---
    <objective>...</objective>
    <tasks>
      <task type="auto">
        <name>Task 1: Add parser</name>
        <files>src/parser.py, tests/test_parser.py</files>
        <action>...</action>
        <verify>...</verify>
        <done>...</done>
      </task>
    </tasks>

Parsing is defensive: absent optional elements default to empty values. The
only hard failures are an unreadable header, a missing ``phase``, a missing or
empty ``<tasks>`` section, and an ``auto`` task without an ``action``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from pydantic import ValidationError

from ..errors import ParseError, PersistenceError
from .schema import DecisionOption, Plan, Task, TaskKind
from .task_filters import filter_placeholder_paths, find_path_tokens

__all__ = ["load_plan", "parse_plan", "parse_tasks"]

LOGGER = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A\s*---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)(.*)\Z", re.DOTALL)
_TASK_RE = re.compile(r"<task(?P<attrs>\s[^>]*)?>(?P<body>.*?)</task>", re.IGNORECASE | re.DOTALL)
_ATTR_RE = re.compile(r"(\w+)\s*=\s*[\"']([^\"']*)[\"']")
_OPTION_RE = re.compile(r"<option(?P<attrs>\s[^>]*)?>(?P<body>.*?)</option>", re.IGNORECASE | re.DOTALL)
_TASK_PREFIX_RE = re.compile(r"^Task\s+\d+\s*:\s*(.+)$", re.IGNORECASE)
_FILES_SPLIT_RE = re.compile(r"\s*(?:,|\r?\n)\s*")
_PURPOSE_RE = re.compile(r"Purpose:\s*(.+?)(?:\n|$)")
_CHECKBOX_RE = re.compile(r"^\s*-\s*\[[xX\s]\]\s*(.+)$")
_BULLET_RE = re.compile(r"^\s*-\s+(.+)$")
_PLAN_NUMBER_RE = re.compile(r"^(\d+)(?:-(.+))?$")
# fenced blocks are opaque: tags inside them belong to quoted output
_FENCE_RE = re.compile(r"^(`{3,})[^\n]*\n.*?^\1[ \t]*$", re.MULTILINE | re.DOTALL)
_FENCE_SLOT_RE = re.compile(r"\x00(\d+)\x00")

_KIND_ALIASES: Mapping[str, TaskKind] = {
    "auto": TaskKind.AUTO,
    "checkpoint:human-verify": TaskKind.CHECKPOINT_VERIFY,
    "checkpoint:verify": TaskKind.CHECKPOINT_VERIFY,
    "checkpoint-verify": TaskKind.CHECKPOINT_VERIFY,
    "checkpoint:decision": TaskKind.CHECKPOINT_DECISION,
    "checkpoint-decision": TaskKind.CHECKPOINT_DECISION,
}


def load_plan(path: Path | str) -> Plan:
    """Read and parse the plan document at ``path``."""
    plan_path = Path(path)
    try:
        content = plan_path.read_text(encoding="utf-8")
    except OSError as error:
        raise PersistenceError(plan_path, "read plan", str(error)) from error
    return parse_plan(content, source_path=plan_path.as_posix())


def parse_plan(content: str, *, source_path: str | None = None) -> Plan:
    """Parse raw plan text into a :class:`Plan` or raise :class:`ParseError`."""
    frontmatter, body = _split_frontmatter(content)

    phase = str(frontmatter.get("phase") or "").strip()
    if not phase:
        raise ParseError("frontmatter", "missing 'phase'")
    plan_number, plan_tag = _parse_plan_number(frontmatter.get("plan"))

    tasks_section = _extract_section(body, "tasks")
    if tasks_section is None:
        raise ParseError("tasks", "missing <tasks> section")
    tasks = parse_tasks(tasks_section)
    if not tasks:
        raise ParseError("tasks", "no <task> elements found")

    objective_section = _extract_section(body, "objective") or ""
    objective = objective_section
    purpose = ""
    purpose_match = _PURPOSE_RE.search(objective_section)
    if purpose_match:
        purpose = purpose_match.group(1).strip()
        objective = objective_section.split("\n\n")[0].strip()

    verification = _collect_lines(_extract_section(body, "verification") or "", _CHECKBOX_RE)
    success_criteria = _collect_lines(_extract_section(body, "success_criteria") or "", _BULLET_RE)

    try:
        return Plan(
            phase=phase,
            plan_number=plan_number,
            plan_tag=plan_tag,
            source_path=source_path,
            objective=objective,
            purpose=purpose,
            tasks=tuple(tasks),
            verification=tuple(verification),
            success_criteria=tuple(success_criteria),
        )
    except ValidationError as error:
        raise ParseError("tasks", str(error)) from error


def parse_tasks(tasks_section: str) -> list[Task]:
    """Parse ``<task>`` elements, assigning 1-based ordinal ids."""
    tasks: list[Task] = []
    masked, restore = _mask_fences(tasks_section)
    for index, match in enumerate(_TASK_RE.finditer(masked), start=1):
        attrs = _parse_attrs(match.group("attrs"))
        body = restore(match.group("body"))
        kind = _KIND_ALIASES.get(attrs.get("type", "auto").strip().lower(), TaskKind.AUTO)

        name = _extract_section(body, "name") or f"Task {index}"
        prefix = _TASK_PREFIX_RE.match(name)
        if prefix:
            name = prefix.group(1).strip()

        action = _extract_section(body, "action") or ""
        if kind is TaskKind.AUTO and not action.strip():
            raise ParseError(f"task {index}", f"auto task '{name}' has an empty <action>")

        tasks.append(
            Task(
                id=index,
                name=name,
                kind=kind,
                files=tuple(_parse_files(_extract_section(body, "files"), task_id=index)),
                action=action,
                verify=_extract_section(body, "verify") or "",
                done=_extract_section(body, "done") or "",
                decision=_extract_section(body, "decision") or "",
                options=tuple(_parse_options(_extract_section(body, "options") or "")),
            )
        )
    return tasks


def _split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    match = _FRONTMATTER_RE.match(content)
    if not match:
        raise ParseError("frontmatter", "document does not start with a '---' header")
    try:
        data = yaml.load(match.group(1), Loader=yaml.BaseLoader) or {}
    except yaml.YAMLError as error:
        raise ParseError("frontmatter", f"invalid YAML: {error}") from error
    if not isinstance(data, dict):
        raise ParseError("frontmatter", "header must be a mapping")
    return data, match.group(2)


def _parse_plan_number(raw: Any) -> tuple[int, str]:
    text = str(raw or "").strip()
    match = _PLAN_NUMBER_RE.match(text)
    if not match:
        return 1, ""
    return int(match.group(1)) or 1, (match.group(2) or "").strip()


def _extract_section(content: str, tag: str) -> str | None:
    masked, restore = _mask_fences(content)
    match = re.search(rf"<{tag}>(.*?)</{tag}>", masked, re.IGNORECASE | re.DOTALL)
    if not match:
        return None
    return restore(match.group(1)).strip()


def _mask_fences(content: str) -> tuple[str, Callable[[str], str]]:
    """Swap fenced blocks for slots; the returned function puts them back."""
    blocks: list[str] = []

    def _stash(match: re.Match[str]) -> str:
        blocks.append(match.group(0))
        return f"\x00{len(blocks) - 1}\x00"

    masked = _FENCE_RE.sub(_stash, content)

    def restore(text: str) -> str:
        if not blocks:
            return text
        return _FENCE_SLOT_RE.sub(lambda slot: blocks[int(slot.group(1))], text)

    return masked, restore


def _parse_attrs(raw: str | None) -> dict[str, str]:
    return {key.lower(): value for key, value in _ATTR_RE.findall(raw or "")}


def _parse_files(raw: str | None, *, task_id: int) -> list[str]:
    text = (raw or "").strip()
    if text.startswith("[") and text.endswith("]") and find_path_tokens(text):
        # YAML-style inline list of real paths
        text = text[1:-1]
    entries = [entry for entry in _FILES_SPLIT_RE.split(text) if entry]
    concrete = filter_placeholder_paths(entries)
    dropped = len(entries) - len(concrete)
    if dropped:
        LOGGER.debug("Dropped %d placeholder file entr%s from task %d", dropped, "y" if dropped == 1 else "ies", task_id)
    return concrete


def _parse_options(raw: str) -> list[DecisionOption]:
    options: list[DecisionOption] = []
    for position, match in enumerate(_OPTION_RE.finditer(raw), start=1):
        attrs = _parse_attrs(match.group("attrs"))
        body = match.group("body").strip()
        name = _extract_section(body, "name")
        description = _extract_section(body, "description") or ""
        if name is None:
            name = body
        options.append(
            DecisionOption(
                id=attrs.get("id") or f"option-{position}",
                name=name.strip(),
                description=description,
            )
        )
    return options


def _collect_lines(content: str, pattern: re.Pattern[str]) -> list[str]:
    items: list[str] = []
    for line in content.splitlines():
        match = pattern.match(line)
        if match:
            items.append(match.group(1).strip())
    return items
