"""Write the Markdown completion summary for a finished plan run."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from ..errors import PersistenceError
from ..planning.schema import Plan, PlanRunSummary, TaskStatus

__all__ = ["SummaryWriter", "render_summary"]

LOGGER = logging.getLogger(__name__)

_STATUS_MARKS = {
    TaskStatus.SUCCESS: "done",
    TaskStatus.FAILED: "FAILED",
    TaskStatus.SKIPPED: "skipped",
}


def _format_duration(duration_ms: int) -> str:
    seconds = duration_ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def render_summary(plan: Plan, summary: PlanRunSummary) -> str:
    """Render ``summary`` as Markdown."""
    lines: List[str] = [
        f"# Plan {plan.label} Summary",
        "",
        f"**Phase:** {plan.phase}",
        f"**Result:** {summary.state.value} "
        f"({summary.succeeded} succeeded, {summary.failed} failed, {summary.skipped} skipped)",
        f"**Duration:** {_format_duration(summary.duration_ms)}",
    ]
    if summary.finished_at is not None:
        lines.append(f"**Completed:** {summary.finished_at.isoformat(timespec='seconds')}")
    if plan.objective:
        lines.extend(["", "## Objective", "", plan.objective])

    lines.extend(["", "## Tasks", "", "| # | Task | Status | Commit |", "|---|------|--------|--------|"])
    for result in summary.results:
        commit = result.commit_hash[:7] if result.commit_hash else "-"
        name = result.task_name.replace("|", "\\|")
        lines.append(f"| {result.task_id} | {name} | {_STATUS_MARKS[result.status]} | {commit} |")

    if summary.decisions:
        lines.extend(["", "## Decisions", ""])
        for task_id, option in summary.decisions.items():
            lines.append(f"- Task {task_id}: {option}")

    failed = [result for result in summary.results if result.status is TaskStatus.FAILED]
    if failed:
        lines.extend(["", "## Failed Tasks", ""])
        for result in failed:
            reference = f" (see {result.issue_id})" if result.issue_id else ""
            lines.append(f"- Task {result.task_id}: {result.task_name}{reference}")
            if result.error:
                lines.append(f"  - {' '.join(result.error.split())}")

    files = summary.files_touched
    if files:
        lines.extend(["", "## Files", "", *[f"- `{path}`" for path in files]])
    return "\n".join(lines) + "\n"


class SummaryWriter:
    """Writes ``{phase}-{plan}-SUMMARY.md`` beside the plan document."""

    def __init__(self, output_dir: Optional[Path] = None) -> None:
        self.output_dir = output_dir

    def path_for(self, plan: Plan) -> Path:
        directory = self.output_dir
        if directory is None:
            directory = Path(plan.source_path).parent if plan.source_path else Path.cwd()
        return directory / f"{plan.label}-SUMMARY.md"

    def write(self, plan: Plan, summary: PlanRunSummary) -> Path:
        path = self.path_for(plan)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render_summary(plan, summary), encoding="utf-8")
        except OSError as error:
            raise PersistenceError(path, "write summary", str(error)) from error
        LOGGER.info("Wrote summary to %s", path)
        return path
