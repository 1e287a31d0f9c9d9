"""Typed records shared by the parser, engine, issue logger and session manager."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class FrozenRecord(BaseModel):
    """Immutable record; used for parsed plans and their tasks."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class TaskKind(str, Enum):
    """How a task interacts with the human operator."""

    AUTO = "auto"
    CHECKPOINT_VERIFY = "checkpoint-verify"
    CHECKPOINT_DECISION = "checkpoint-decision"


class TaskStatus(str, Enum):
    """Outcome recorded for a single task."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, Enum):
    """States of the execution engine over one plan."""

    IDLE = "Idle"
    RUNNING = "Running"
    TASK_SUCCEEDED = "TaskSucceeded"
    TASK_FAILED = "TaskFailed"
    CHECKPOINT_PAUSED = "CheckpointPaused"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


class DecisionOption(FrozenRecord):
    """One choice offered by a checkpoint-decision task."""

    id: str
    name: str = ""
    description: str = ""


class Task(FrozenRecord):
    """One unit of work inside a plan."""

    id: int
    name: str
    kind: TaskKind = TaskKind.AUTO
    files: tuple[str, ...] = ()
    action: str = ""
    verify: str = ""
    done: str = ""
    decision: str = ""
    options: tuple[DecisionOption, ...] = ()


class Plan(FrozenRecord):
    """Ordered task list plus the metadata from the plan header."""

    phase: str
    plan_number: int = 1
    plan_tag: str = ""
    source_path: Optional[str] = None
    objective: str = ""
    purpose: str = ""
    tasks: tuple[Task, ...] = ()
    verification: tuple[str, ...] = ()
    success_criteria: tuple[str, ...] = ()

    @field_validator("tasks")
    @classmethod
    def _ids_strictly_increasing(cls, tasks: tuple[Task, ...]) -> tuple[Task, ...]:
        previous = 0
        for task in tasks:
            if task.id <= previous:
                raise ValueError(f"task ids must be strictly increasing (saw {task.id} after {previous})")
            previous = task.id
        return tasks

    @property
    def label(self) -> str:
        """Return the ``{phase}-{plan}`` label used in file names."""
        label = f"{phase_number(self.phase)}-{self.plan_number:02d}"
        return f"{label}-{self.plan_tag}" if self.plan_tag else label


class ExecutionResult(RecordModel):
    """Per-task outcome recorded by the engine."""

    task_id: int
    task_name: str
    status: TaskStatus
    tool_output: str = ""
    commit_hash: Optional[str] = None
    duration_ms: int = 0
    issue_id: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class TaskFailure(RecordModel):
    """Diagnostic context handed from the engine to the issue logger."""

    plan_path: str
    task_id: int
    task_name: str
    error: str
    full_output: str = ""
    verify_output: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    phase: str
    timestamp: datetime = Field(default_factory=utc_now)


class IssueImpact(str, Enum):
    """Impact classification stored with each issue."""

    BLOCKING = "Blocking"
    MAJOR = "Major"
    MINOR = "Minor"


class Issue(RecordModel):
    """Persisted record of a task failure."""

    id: str
    title: str = ""
    description: str = ""
    impact: IssueImpact = IssueImpact.BLOCKING
    phase: str = ""
    task_id: Optional[int] = None
    plan_path: Optional[str] = None
    discovered: Optional[str] = None
    affected_files: List[str] = Field(default_factory=list)
    full_output: str = ""
    is_open: bool = True


class Handoff(RecordModel):
    """Resumable context written when work pauses."""

    reason: str
    phase: str = ""
    plan_path: Optional[str] = None
    task_index: int = 0
    total_tasks: int = 0
    completed_task_ids: List[int] = Field(default_factory=list)
    remaining_tasks: List[str] = Field(default_factory=list)
    note: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class Position(RecordModel):
    """Current pointer into the phase/plan/task sequence."""

    phase: str = ""
    plan_index: int = 0
    task_index: int = 0
    status: str = "Idle"


class SessionState(RecordModel):
    """Single overwritten record describing where the workspace stands."""

    position: Position = Field(default_factory=Position)
    last_activity: str = ""
    last_activity_at: Optional[datetime] = None
    progress: int = 0
    handoff: Optional[Handoff] = None
    last_completion: Optional[Dict[str, object]] = None


def phase_number(phase: str) -> str:
    """Return the leading numeric segment of a phase id (``09-ui`` -> ``09``)."""
    digits = ""
    for char in phase.strip():
        if char.isdigit() or (char == "." and digits and not digits.endswith(".")):
            digits += char
            continue
        break
    digits = digits.rstrip(".")
    return digits or "00"


class PlanRunSummary(RecordModel):
    """Completion artifact for one run of a plan."""

    plan: str
    plan_path: Optional[str] = None
    phase: str = ""
    objective: str = ""
    state: RunState = RunState.IDLE
    failure_policy: str = "continue-on-failure"
    results: List[ExecutionResult] = Field(default_factory=list)
    decisions: Dict[str, str] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    start_index: int = 0

    def _count(self, status: TaskStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(TaskStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(TaskStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(TaskStatus.SKIPPED)

    @property
    def commit_hashes(self) -> List[str]:
        return [result.commit_hash for result in self.results if result.commit_hash]

    @property
    def issue_ids(self) -> List[str]:
        return [result.issue_id for result in self.results if result.issue_id]

    @property
    def files_touched(self) -> List[str]:
        seen: Dict[str, None] = {}
        for result in self.results:
            if result.status is TaskStatus.SUCCESS:
                for path in result.files:
                    seen.setdefault(path, None)
        return list(seen)

    def to_artifact(self) -> Dict[str, object]:
        """Return a JSON-compatible record of what ran, what passed and what was committed."""
        return {
            "plan": self.plan,
            "plan_path": self.plan_path,
            "phase": self.phase,
            "state": self.state.value,
            "failure_policy": self.failure_policy,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "commits": self.commit_hashes,
            "issues": self.issue_ids,
            "decisions": dict(self.decisions),
            "duration_ms": self.duration_ms,
            "finished_at": self.finished_at.isoformat(timespec="seconds") if self.finished_at else None,
            "tasks": [
                {
                    "id": result.task_id,
                    "name": result.task_name,
                    "status": result.status.value,
                    "commit": result.commit_hash,
                    "issue": result.issue_id,
                }
                for result in self.results
            ],
        }
