"""Session position, handoff and crash-recovery marker persistence.

State lives in a single YAML document that is overwritten in place. All
reads and writes go through a :class:`StatePort` so callers (and tests) can
swap the storage. The agent marker is a separate small file written when a run
starts and deleted when it ends; finding it at session start means the last
run never reached its end.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol

import yaml
from pydantic import ValidationError

from ..errors import PersistenceError
from ..planning.schema import Handoff, Plan, Position, RunState, SessionState, utc_now

__all__ = [
    "AgentMarker",
    "InMemoryStatePort",
    "SessionReport",
    "SessionStateManager",
    "SessionStatus",
    "StatePort",
    "YamlStatePort",
]

LOGGER = logging.getLogger(__name__)


class StatePort(Protocol):
    """Persistence port for the single :class:`SessionState` record."""

    def read(self) -> Optional[SessionState]:
        ...

    def write(self, state: SessionState) -> None:
        ...


class YamlStatePort:
    """Store the session state as a YAML document."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def read(self) -> Optional[SessionState]:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as error:
            raise PersistenceError(self.path, "read session state", str(error)) from error
        if not isinstance(data, dict):
            raise PersistenceError(self.path, "read session state", "document must be a mapping")
        try:
            return SessionState.model_validate(data)
        except ValidationError as error:
            raise PersistenceError(self.path, "read session state", str(error)) from error

    def write(self, state: SessionState) -> None:
        payload = state.model_dump(mode="json")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
        except OSError as error:
            raise PersistenceError(self.path, "write session state", str(error)) from error


class InMemoryStatePort:
    """Volatile port used by callers that do not persist position."""

    def __init__(self, state: Optional[SessionState] = None) -> None:
        self.state = state

    def read(self) -> Optional[SessionState]:
        return self.state.model_copy(deep=True) if self.state is not None else None

    def write(self, state: SessionState) -> None:
        self.state = state.model_copy(deep=True)


class AgentMarker:
    """Ephemeral file bracketing a run: ``{agent id}\\n{started at}\\n{plan}``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def write(self, plan_path: Optional[str] = None) -> str:
        agent_id = uuid.uuid4().hex
        lines = [agent_id, utc_now().isoformat(timespec="seconds"), plan_path or ""]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as error:
            raise PersistenceError(self.path, "write agent marker", str(error)) from error
        return agent_id

    def read(self) -> Optional[str]:
        """Return the recorded agent id, or ``None`` when no marker exists."""
        if not self.path.exists():
            return None
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise PersistenceError(self.path, "read agent marker", str(error)) from error
        first = content.strip().splitlines()
        return first[0].strip() if first else ""

    def exists(self) -> bool:
        return self.path.exists()

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as error:
            raise PersistenceError(self.path, "delete agent marker", str(error)) from error


class SessionStatus(str, Enum):
    """What a new session finds when it starts."""

    CLEAN = "clean"
    PAUSED = "paused"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class SessionReport:
    status: SessionStatus
    state: SessionState
    handoff: Optional[Handoff] = None
    agent_id: Optional[str] = None


class SessionStateManager:
    """Owns every mutation of the workspace's :class:`SessionState`."""

    def __init__(self, port: StatePort, marker: Optional[AgentMarker] = None) -> None:
        self.port = port
        self.marker = marker

    @classmethod
    def for_paths(cls, state_path: Path | str, marker_path: Path | str) -> "SessionStateManager":
        return cls(YamlStatePort(state_path), AgentMarker(marker_path))

    def load(self) -> SessionState:
        """Return the stored state, or a fresh idle state."""
        return self.port.read() or SessionState()

    def _save(self, state: SessionState, activity: str) -> SessionState:
        state.last_activity = activity
        state.last_activity_at = utc_now()
        self.port.write(state)
        return state

    # ---------------------------------------------------------------- progress
    def update_after_task(
        self,
        plan: Plan,
        *,
        task_index: int,
        status: RunState | str,
        activity: str,
        progress: int,
    ) -> SessionState:
        """Record the position reached after a task finished (or was skipped)."""
        state = self.load()
        state.position = Position(
            phase=plan.phase,
            plan_index=plan.plan_number,
            task_index=task_index,
            status=RunState(status).value if isinstance(status, RunState) else str(status),
        )
        state.progress = max(0, min(100, int(progress)))
        return self._save(state, activity)

    def record_completion(self, summary: Dict[str, Any]) -> SessionState:
        """Store the completion artifact of the last finished plan."""
        state = self.load()
        state.last_completion = dict(summary)
        state.position.status = RunState.COMPLETED.value
        state.progress = 100
        return self._save(state, f"Completed plan {summary.get('plan', '')}".strip())

    # ----------------------------------------------------------------- handoff
    def pause(
        self,
        reason: str,
        plan_path: Optional[str] = None,
        *,
        note: str = "",
        phase: str = "",
        task_index: int = 0,
        total_tasks: int = 0,
        completed_task_ids: Iterable[int] = (),
        remaining_tasks: Iterable[str] = (),
    ) -> Handoff:
        """Write the single handoff record, replacing any previous one."""
        state = self.load()
        handoff = Handoff(
            reason=reason,
            phase=phase or state.position.phase,
            plan_path=plan_path,
            task_index=task_index,
            total_tasks=total_tasks,
            completed_task_ids=list(completed_task_ids),
            remaining_tasks=list(remaining_tasks),
            note=note,
        )
        if state.handoff is not None:
            LOGGER.debug("Replacing existing handoff (%s)", state.handoff.reason)
        state.handoff = handoff
        state.position.status = RunState.CHECKPOINT_PAUSED.value
        self._save(state, f"Paused: {reason}")
        LOGGER.info("Session paused: %s", reason)
        return handoff

    def resume(self) -> Optional[Handoff]:
        """Return the active handoff without deleting it."""
        return self.load().handoff

    def clear_handoff_after_completion(self, plan_path: Optional[str] = None) -> bool:
        """Delete the handoff once the plan it references has completed.

        A handoff that names a different plan is left in place. Returns True
        when a handoff was removed.
        """
        state = self.load()
        handoff = state.handoff
        if handoff is None:
            return False
        if plan_path is not None and handoff.plan_path and not _same_path(handoff.plan_path, plan_path):
            LOGGER.debug("Keeping handoff for %s; completed plan was %s", handoff.plan_path, plan_path)
            return False
        state.handoff = None
        self._save(state, "Cleared handoff after completion")
        return True

    # ------------------------------------------------------------------ marker
    def begin_run(self, plan: Plan, start_index: int = 0) -> Optional[str]:
        """Write the agent marker and mark the position as running from ``start_index``."""
        agent_id = self.marker.write(plan.source_path) if self.marker is not None else None
        state = self.load()
        state.position = Position(
            phase=plan.phase,
            plan_index=plan.plan_number,
            task_index=start_index,
            status=RunState.RUNNING.value,
        )
        state.progress = round(start_index * 100 / len(plan.tasks)) if plan.tasks else 0
        self._save(state, f"Started plan {plan.label}")
        return agent_id

    def end_run(self) -> None:
        """Remove the agent marker."""
        if self.marker is not None:
            self.marker.clear()

    def inspect_session(self) -> SessionReport:
        """Classify the workspace as clean, paused or interrupted."""
        state = self.load()
        agent_id = self.marker.read() if self.marker is not None else None
        if agent_id is not None:
            return SessionReport(SessionStatus.INTERRUPTED, state, state.handoff, agent_id)
        if state.handoff is not None:
            return SessionReport(SessionStatus.PAUSED, state, state.handoff)
        return SessionReport(SessionStatus.CLEAN, state)


def _same_path(left: str, right: str) -> bool:
    return Path(left).resolve() == Path(right).resolve()
