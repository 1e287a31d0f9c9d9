"""Evaluate a checkpoint task's ``verify`` clause against what actually happened.

Three strategies, tried in order:

1. The clause names a shell command (backticked, or a line starting with a
   known tool such as ``pytest`` or ``npm``): run it in the workspace and use
   its exit status.
2. The tool output ends with a ``VERIFY: PASS`` / ``VERIFY: FAIL`` line: trust
   the last one.
3. Otherwise the output passes unless it carries a recognised error
   signature.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..planning.fix_plan import ErrorKind, classify_error, find_error_signature
from ..planning.schema import Task
from .runner import CancellationToken, ToolRun, run_cancellable

__all__ = ["VerificationOutcome", "extract_verify_command", "verify_task"]

LOGGER = logging.getLogger(__name__)

_COMMAND_PREFIXES = (
    "pytest",
    "python",
    "python3",
    "npm",
    "npx",
    "yarn",
    "pnpm",
    "node",
    "make",
    "cargo",
    "go",
    "tox",
    "ruff",
    "mypy",
    "git",
    "bash",
    "sh",
)
_BACKTICK_RE = re.compile(r"`([^`\n]+)`")
_MARKER_RE = re.compile(r"^\s*VERIFY:\s*(PASS|FAIL)\b(.*)$", re.IGNORECASE | re.MULTILINE)
DEFAULT_VERIFY_TIMEOUT = 600.0


@dataclass(slots=True)
class VerificationOutcome:
    passed: bool
    method: str
    output: str = ""
    reason: str = ""


def _looks_like_command(text: str) -> bool:
    candidate = text.strip().lstrip("$ ").strip()
    if not candidate:
        return False
    head = candidate.split()[0]
    return head in _COMMAND_PREFIXES or head.startswith("./")


def extract_verify_command(verify: str) -> Optional[str]:
    """Return the shell command named by a verify clause, if any."""
    for match in _BACKTICK_RE.finditer(verify or ""):
        if _looks_like_command(match.group(1)):
            return match.group(1).strip().lstrip("$ ").strip()
    for line in (verify or "").splitlines():
        if _looks_like_command(line):
            return line.strip().lstrip("$ ").strip()
    return None


async def _run_command(command: str, cwd: Path, timeout: float) -> VerificationOutcome:
    try:
        argv = shlex.split(command)
    except ValueError as error:
        return VerificationOutcome(False, "command", reason=f"Unparseable verify command: {error}")
    LOGGER.info("Running verify command: %s", command)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as error:
        return VerificationOutcome(False, "command", reason=f"Could not start '{command}': {error}")
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return VerificationOutcome(False, "command", reason=f"'{command}' timed out after {timeout:.0f}s")
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    if process.returncode == 0:
        return VerificationOutcome(True, "command", output=output)
    return VerificationOutcome(
        False,
        "command",
        output=output,
        reason=f"'{command}' exited with status {process.returncode}",
    )


def _check_markers(output: str) -> Optional[VerificationOutcome]:
    markers = list(_MARKER_RE.finditer(output or ""))
    if not markers:
        return None
    last = markers[-1]
    verdict = last.group(1).upper()
    detail = last.group(2).strip(" -:")
    if verdict == "PASS":
        return VerificationOutcome(True, "marker", output=last.group(0).strip())
    return VerificationOutcome(False, "marker", output=last.group(0).strip(), reason=detail or "reported VERIFY: FAIL")


async def verify_task(
    task: Task,
    run: ToolRun,
    *,
    cwd: Path,
    token: Optional[CancellationToken] = None,
    timeout: float = DEFAULT_VERIFY_TIMEOUT,
) -> VerificationOutcome:
    """Decide whether ``task``'s verify clause holds for ``run``."""
    command = extract_verify_command(task.verify)
    if command:
        return await run_cancellable(_run_command(command, cwd, timeout), token)

    marked = _check_markers(run.output)
    if marked is not None:
        return marked

    if classify_error(run.output) is not ErrorKind.UNKNOWN:
        signature = find_error_signature(run.output) or "error output"
        return VerificationOutcome(False, "signature", output=signature, reason=f"Output reports a failure: {signature}")
    return VerificationOutcome(True, "signature")
