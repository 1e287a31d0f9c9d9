"""Port to the tool-calling capability plus cooperative cancellation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, List, Optional, Protocol, Sequence, TypeVar

from ..errors import TaskCancelled, ToolInvocationError
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..planning.schema import Task

__all__ = [
    "CancellationToken",
    "LLMToolRunner",
    "ToolRun",
    "ToolRunOutput",
    "ToolRunner",
    "build_tool_instruction",
    "run_cancellable",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_PROMPT = (
    "You are executing one task of a structured engineering plan inside a local "
    "repository. Perform the action using the available tools, keep changes scoped "
    "to the listed files, and report everything you ran and observed."
)


class CancellationToken:
    """Cooperative cancellation signal shared by the engine and its callers.

    Must be used from the event loop thread; ``cancel`` is idempotent and the
    first reason wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled(self.reason)


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """Await ``awaitable`` unless ``token`` fires first, then raise :class:`TaskCancelled`."""
    if token is None:
        return await awaitable
    token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise
    if work in done:
        waiter.cancel()
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as error:  # abandoned work
        LOGGER.debug("Cancelled work raised %s", error)
    raise TaskCancelled(token.reason)


@dataclass(slots=True)
class ToolRun:
    """Full output of one tool-calling interaction."""

    output: str
    succeeded: bool = True


class ToolRunner(Protocol):
    """The external tool-calling capability: instruction in, full text out.

    Implementations raise :class:`ToolInvocationError` when the capability
    itself fails; a run that completed but reports failure returns
    ``succeeded=False``.
    """

    async def run(self, instruction: str, files: Sequence[str]) -> ToolRun:
        ...


def build_tool_instruction(task: Task, *, selection: Optional[str] = None) -> str:
    """Compose the instruction sent to the tool runner for ``task``."""
    parts = [f"Task {task.id}: {task.name}", "", task.action.strip()]
    if selection:
        parts.extend(["", f"Selected option: {selection}"])
    if task.files:
        parts.extend(["", "Files in scope:", *[f"- {path}" for path in task.files]])
    if task.verify.strip():
        parts.extend(["", f"Verify: {task.verify.strip()}"])
    if task.done.strip():
        parts.extend(["", f"Done when: {task.done.strip()}"])
    parts.extend(
        [
            "",
            "Finish your report with a final line 'VERIFY: PASS' when the verify "
            "condition holds, or 'VERIFY: FAIL - <reason>' when it does not.",
        ]
    )
    return "\n".join(parts)


@dataclass(slots=True)
class ToolRunOutput:
    """Structured response expected from the model for a tool run."""

    output: str
    succeeded: bool = True
    files_changed: List[str] = field(default_factory=list)


class LLMToolRunner:
    """Tool runner backed by an :class:`LLMClient`; calls run off the event loop."""

    def __init__(self, client: LLMClient, *, workspace: Optional[Path] = None) -> None:
        self.client = client
        self.workspace = workspace

    async def run(self, instruction: str, files: Sequence[str]) -> ToolRun:
        request = LLMRequest(
            prompt=instruction,
            response_model=ToolRunOutput,
            system_prompt=SYSTEM_PROMPT,
            metadata={
                "phase": "tool-run",
                "files": list(files),
                "workspace": self.workspace.as_posix() if self.workspace else "",
            },
        )
        try:
            response = await asyncio.to_thread(self.client.invoke, request)
        except LLMClientError as error:
            raise ToolInvocationError(f"Model call failed: {error}", output=str(error)) from error
        output = response.output
        if response.files_changed:
            output = f"{output.rstrip()}\n\nFiles changed: {', '.join(response.files_changed)}"
        return ToolRun(output=output, succeeded=response.succeeded)
