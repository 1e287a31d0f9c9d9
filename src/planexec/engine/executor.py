"""Execution engine: drive a parsed plan through gates, the tool runner, verification,
commits, issue logging and session updates.

Tasks run strictly in order. A failing task is logged as an issue and the
engine moves on to the next task; only persistence failures abort the run.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional, Protocol

from ..errors import (
    PersistenceError,
    PlanExecutionError,
    TaskCancelled,
    ToolInvocationError,
    VerificationFailure,
)
from ..issues.logger import IssueLogger, LogOutcome
from ..planning.schema import (
    ExecutionResult,
    Plan,
    PlanRunSummary,
    RunState,
    Task,
    TaskFailure,
    TaskKind,
    TaskStatus,
    utc_now,
)
from ..state.session import SessionStateManager
from ..tools.gates import (
    ExecutionMode,
    GateDecision,
    decide_gate,
    parse_execution_mode,
    suspends_for_input,
)
from ..tools.vcs import GitCommitService
from .runner import CancellationToken, ToolRun, ToolRunner, build_tool_instruction, run_cancellable
from .summary import SummaryWriter
from .verify import verify_task

__all__ = ["CHECKPOINT_REASON", "CheckpointResponder", "ExecutionEngine"]

LOGGER = logging.getLogger(__name__)

CHECKPOINT_REASON = "checkpoint"
CANCELLED_REASON = "cancelled"
_TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.CHECKPOINT_PAUSED, RunState.ABORTED})
_STATE_AFTER_TASK = {
    TaskStatus.SUCCESS: RunState.TASK_SUCCEEDED,
    TaskStatus.FAILED: RunState.TASK_FAILED,
    TaskStatus.SKIPPED: RunState.RUNNING,
}
# skipped tasks have no engine state of their own
_POSITION_STATUS = {TaskStatus.SKIPPED: "TaskSkipped"}


class CheckpointResponder(Protocol):
    """Supplies human answers at confirmation and decision gates."""

    async def confirm(self, task: Task) -> bool:
        """Return True to run ``task``; False records it as skipped."""
        ...

    async def decide(self, task: Task) -> Optional[str]:
        """Return the chosen option id, or ``None`` to skip the task."""
        ...


class _Attempt:
    """Mutable outcome of one task attempt."""

    __slots__ = ("output", "verify_output", "commit_hash")

    def __init__(self) -> None:
        self.output = ""
        self.verify_output: Optional[str] = None
        self.commit_hash: Optional[str] = None


class ExecutionEngine:
    """State machine over one plan: Idle -> Running -> Completed | CheckpointPaused | Aborted."""

    def __init__(
        self,
        runner: ToolRunner,
        *,
        session: SessionStateManager,
        issue_logger: IssueLogger,
        commits: Optional[GitCommitService] = None,
        mode: ExecutionMode | str = ExecutionMode.GUIDED,
        responder: Optional[CheckpointResponder] = None,
        summary_writer: Optional[SummaryWriter] = None,
        workspace: Optional[Path] = None,
        auto_commit: bool = True,
    ) -> None:
        self.runner = runner
        self.session = session
        self.issue_logger = issue_logger
        self.mode = parse_execution_mode(mode)
        self.responder = responder
        self.summary_writer = summary_writer
        self.workspace = Path(workspace or Path.cwd()).resolve()
        self.auto_commit = auto_commit
        if commits is None and auto_commit:
            commits = GitCommitService.for_workspace(self.workspace)
        self.commits = commits
        self.state = RunState.IDLE

    # ------------------------------------------------------------------ public
    async def execute(
        self,
        plan: Plan,
        *,
        start_index: int = 0,
        approved_checkpoint: bool = False,
        decision: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> PlanRunSummary:
        """Run ``plan`` from ``start_index`` and return the run summary.

        ``approved_checkpoint`` marks the gate of the first task as already
        answered (used when resuming a paused checkpoint); ``decision`` is the
        option chosen for it when it is a decision task.
        """
        if self.state is RunState.RUNNING:
            raise PlanExecutionError("A plan is already running in this engine")
        if not 0 <= start_index <= len(plan.tasks):
            raise PlanExecutionError(f"Start index {start_index} is outside plan {plan.label}")

        summary = PlanRunSummary(
            plan=plan.label,
            plan_path=plan.source_path,
            phase=plan.phase,
            objective=plan.objective,
            start_index=start_index,
        )
        started = time.monotonic()
        self.state = RunState.RUNNING
        self.session.begin_run(plan, start_index)
        LOGGER.info("Executing plan %s (%d task(s), mode=%s)", plan.label, len(plan.tasks), self.mode.value)

        try:
            for index in range(start_index, len(plan.tasks)):
                task = plan.tasks[index]
                if token is not None and token.cancelled:
                    return self._abort(plan, summary, index, token.reason, started)
                pre_approved = approved_checkpoint and index == start_index
                try:
                    result = await self._execute_task(
                        plan,
                        task,
                        summary,
                        token=token,
                        pre_approved=pre_approved,
                        decision=decision if pre_approved else None,
                    )
                except TaskCancelled as cancelled:
                    summary.results.append(
                        ExecutionResult(
                            task_id=task.id,
                            task_name=task.name,
                            status=TaskStatus.SKIPPED,
                            files=list(task.files),
                            error=str(cancelled),
                        )
                    )
                    LOGGER.warning("Task %d (%s) cancelled: %s", task.id, task.name, cancelled.reason)
                    return self._abort(plan, summary, index, cancelled.reason, started)

                if result is None:
                    return self._pause_at_checkpoint(plan, summary, index, started)

                summary.results.append(result)
                self.state = _STATE_AFTER_TASK[result.status]
                attempted = index + 1
                self.session.update_after_task(
                    plan,
                    task_index=attempted,
                    status=_POSITION_STATUS.get(result.status, self.state.value),
                    activity=f"Task {task.id} {result.status.value}: {task.name}",
                    progress=round(attempted * 100 / len(plan.tasks)),
                )
            return self._complete(plan, summary, started)
        finally:
            if self.state not in _TERMINAL_STATES:
                # an exception escaped mid-plan; the agent marker stays in place
                self.state = RunState.IDLE

    async def resume(
        self,
        plan: Plan,
        *,
        decision: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> PlanRunSummary:
        """Continue ``plan`` from the stored handoff, or from the start when none applies."""
        handoff = self.session.resume()
        if handoff is None or not _same_plan(handoff.plan_path, plan.source_path):
            return await self.execute(plan, token=token)
        LOGGER.info("Resuming plan %s at task index %d (%s)", plan.label, handoff.task_index, handoff.reason)
        return await self.execute(
            plan,
            start_index=min(handoff.task_index, len(plan.tasks)),
            approved_checkpoint=handoff.reason.startswith(CHECKPOINT_REASON),
            decision=decision,
            token=token,
        )

    # ------------------------------------------------------------------- tasks
    async def _execute_task(
        self,
        plan: Plan,
        task: Task,
        summary: PlanRunSummary,
        *,
        token: Optional[CancellationToken],
        pre_approved: bool,
        decision: Optional[str],
    ) -> Optional[ExecutionResult]:
        """Gate, run, verify and commit ``task``; ``None`` means the run must pause."""
        gate = decide_gate(task.kind, self.mode)
        LOGGER.info("Task %d (%s): gate %s", task.id, task.name, gate.value)
        selection: Optional[str] = None

        if gate is GateDecision.AUTO_SELECT_DEFAULT:
            selection = _default_option(task)
        elif suspends_for_input(gate):
            if pre_approved:
                if task.kind is TaskKind.CHECKPOINT_DECISION:
                    selection = decision or _default_option(task)
            elif self.responder is None:
                return None
            elif task.kind is TaskKind.CHECKPOINT_DECISION:
                selection = await run_cancellable(self.responder.decide(task), token)
                if selection is None:
                    return _skipped(task, "Decision declined")
            elif not await run_cancellable(self.responder.confirm(task), token):
                return _skipped(task, "Not confirmed")

        if selection is not None:
            summary.decisions[str(task.id)] = selection
            LOGGER.info("Task %d (%s): selected option %s", task.id, task.name, selection)
            if not task.action.strip():
                return ExecutionResult(
                    task_id=task.id,
                    task_name=task.name,
                    status=TaskStatus.SUCCESS,
                    tool_output=f"Selected option: {selection}",
                )

        attempt = _Attempt()
        started = time.monotonic()
        try:
            await self._attempt(plan, task, attempt, selection=selection, token=token)
        except (ToolInvocationError, VerificationFailure) as error:
            return self._record_failure(plan, task, error, attempt, started)
        return ExecutionResult(
            task_id=task.id,
            task_name=task.name,
            status=TaskStatus.SUCCESS,
            tool_output=attempt.output,
            commit_hash=attempt.commit_hash,
            duration_ms=_elapsed_ms(started),
            files=list(task.files),
        )

    async def _attempt(
        self,
        plan: Plan,
        task: Task,
        attempt: _Attempt,
        *,
        selection: Optional[str],
        token: Optional[CancellationToken],
    ) -> None:
        instruction = build_tool_instruction(task, selection=selection)
        try:
            run = await run_cancellable(self.runner.run(instruction, list(task.files)), token)
        except PlanExecutionError:
            raise
        except Exception as error:
            raise ToolInvocationError(f"Tool runner raised {type(error).__name__}: {error}", output=str(error)) from error
        attempt.output = run.output
        if not run.succeeded:
            raise ToolInvocationError("Tool run reported failure", output=run.output)

        if task.kind is TaskKind.CHECKPOINT_VERIFY:
            await self._verify(task, run, attempt, token)

        if self.auto_commit and self.commits is not None:
            commit = await self.commits.commit_task(plan, task)
            attempt.commit_hash = commit.hash

    async def _verify(
        self, task: Task, run: ToolRun, attempt: _Attempt, token: Optional[CancellationToken]
    ) -> None:
        outcome = await verify_task(task, run, cwd=self.workspace, token=token)
        if outcome.passed:
            LOGGER.info("Task %d (%s): verification passed (%s)", task.id, task.name, outcome.method)
            return
        attempt.verify_output = outcome.output or outcome.reason
        raise VerificationFailure(f"Verification failed: {outcome.reason}", verify_output=attempt.verify_output)

    def _record_failure(
        self,
        plan: Plan,
        task: Task,
        error: PlanExecutionError,
        attempt: _Attempt,
        started: float,
    ) -> ExecutionResult:
        output = attempt.output or getattr(error, "output", "") or ""
        failure = TaskFailure(
            plan_path=plan.source_path or plan.label,
            task_id=task.id,
            task_name=task.name,
            error=str(error),
            full_output=output,
            verify_output=attempt.verify_output,
            files=list(task.files),
            phase=plan.phase,
        )
        logged = self.issue_logger.log_failure(failure)
        if logged.outcome is LogOutcome.IO_ERROR:
            raise PersistenceError(self.issue_logger.store.path, "record issue", logged.error or "unknown error")
        LOGGER.warning("Task %d (%s) failed: %s (see %s)", task.id, task.name, error, logged.issue_id)
        return ExecutionResult(
            task_id=task.id,
            task_name=task.name,
            status=TaskStatus.FAILED,
            tool_output=output,
            duration_ms=_elapsed_ms(started),
            issue_id=logged.issue_id,
            files=list(task.files),
            error=str(error),
        )

    # ------------------------------------------------------------- run ending
    def _finish(self, summary: PlanRunSummary, state: RunState, started: float) -> PlanRunSummary:
        summary.state = state
        summary.finished_at = utc_now()
        summary.duration_ms = _elapsed_ms(started)
        self.state = state
        return summary

    def _complete(self, plan: Plan, summary: PlanRunSummary, started: float) -> PlanRunSummary:
        self._finish(summary, RunState.COMPLETED, started)
        if self.summary_writer is not None:
            self.summary_writer.write(plan, summary)
        self.session.record_completion(summary.to_artifact())
        self.session.clear_handoff_after_completion(plan.source_path)
        self.session.end_run()
        LOGGER.info(
            "Plan %s completed: %d succeeded, %d failed, %d skipped",
            plan.label,
            summary.succeeded,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _pause_at_checkpoint(self, plan: Plan, summary: PlanRunSummary, index: int, started: float) -> PlanRunSummary:
        task = plan.tasks[index]
        self._write_handoff(plan, summary, index, f"{CHECKPOINT_REASON}: task {task.id} ({task.name}) awaits input")
        self.session.end_run()
        LOGGER.info("Paused plan %s at checkpoint task %d", plan.label, task.id)
        return self._finish(summary, RunState.CHECKPOINT_PAUSED, started)

    def _abort(self, plan: Plan, summary: PlanRunSummary, index: int, reason: str, started: float) -> PlanRunSummary:
        self._write_handoff(plan, summary, index, f"{CANCELLED_REASON}: {reason}")
        self.session.end_run()
        LOGGER.warning("Plan %s aborted at task index %d: %s", plan.label, index, reason)
        return self._finish(summary, RunState.ABORTED, started)

    def _write_handoff(self, plan: Plan, summary: PlanRunSummary, index: int, reason: str) -> None:
        completed: List[int] = [
            result.task_id for result in summary.results if result.status is TaskStatus.SUCCESS
        ]
        self.session.pause(
            reason,
            plan.source_path,
            phase=plan.phase,
            task_index=index,
            total_tasks=len(plan.tasks),
            completed_task_ids=completed,
            remaining_tasks=[task.name for task in plan.tasks[index:]],
            note=f"Resume plan {plan.label} at task {plan.tasks[index].id}" if index < len(plan.tasks) else "",
        )


def _default_option(task: Task) -> str:
    return task.options[0].id if task.options else "default"


def _skipped(task: Task, reason: str) -> ExecutionResult:
    LOGGER.info("Task %d (%s) skipped: %s", task.id, task.name, reason)
    return ExecutionResult(
        task_id=task.id,
        task_name=task.name,
        status=TaskStatus.SKIPPED,
        files=list(task.files),
        error=reason,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _same_plan(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return Path(left).resolve() == Path(right).resolve()
