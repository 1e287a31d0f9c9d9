"""Minimal git helpers and the per-task commit service.

:class:`GitRepository` wraps the ``git`` command line synchronously.
:class:`GitCommitService` layers the engine's commit policy on top: it filters
placeholder and missing paths, derives a deterministic commit message from the
task, runs git off the event loop, and never lets a git failure escape as an
exception.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence, Set

from ..errors import CommitError
from ..planning.schema import Plan, Task, phase_number
from ..planning.task_filters import filter_placeholder_paths

LOGGER = logging.getLogger(__name__)

_FIX_KEYWORDS = ("fix", "bug", "error", "issue")
_REFACTOR_KEYWORDS = ("refactor", "restructure", "reorganize", "rename")
_DOCS_KEYWORDS = ("document", "readme", "summary", "comment", "docs")
_TASK_PREFIX_RE = re.compile(r"^Task\s*\d+:\s*", re.IGNORECASE)


class GitError(CommitError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class CommitInfo:
    """One entry from ``git log``."""

    hash: str
    message: str


@dataclass(slots=True)
class CommitResult:
    """Outcome of a commit attempt; ``hash`` is ``None`` when nothing was committed."""

    hash: str | None = None
    message: str = ""
    staged: tuple[str, ...] = ()
    error: str | None = None

    @property
    def committed(self) -> bool:
        return self.hash is not None


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a new git repository at ``root`` with an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        git_dir = path / ".git"
        if git_dir.exists():
            raise GitError(f"Already a git repository: {path}")

        def _run(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
            return _execute(path, args, check=check)

        _run(["init"])

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value])

        _ensure_config("user.email", "planexec@example.com")
        _ensure_config("user.name", "Plan Executor")

        _run(["add", "."])
        _run(["commit", "--allow-empty", "-m", "Initial commit"])

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("git %s (cwd=%s)", " ".join(args), self.root)
        return _execute(self.root, args, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def head(self) -> str | None:
        """Return the current ``HEAD`` commit or ``None`` on an unborn branch."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ----------------------------------------------------------- index/commit
    def stage_paths(self, paths: Sequence[str]) -> None:
        """Add ``paths`` (relative to the root) to the index."""

        if paths:
            self._run_git(["add", "--", *paths], check=True)

    def stage_all(self) -> None:
        """Stage every change in the working tree (``git add --all``)."""

        self._run_git(["add", "--all"], check=True)

    def commit(self, message: str, *, paths: Sequence[str] = ()) -> str | None:
        """Commit the index (limited to ``paths`` when given).

        Returns the new commit SHA, or ``None`` when there was nothing to commit.
        """

        args: List[str] = ["commit", "-m", message]
        if paths:
            args.extend(["--", *paths])
        result = self._run_git(args, check=False)
        if result.returncode != 0:
            output = result.stderr.strip() or result.stdout.strip() or ""
            lowered = output.lower()
            if "nothing to commit" in lowered or "no changes added to commit" in lowered:
                return None
            raise GitError(f"git commit failed: {output or 'unknown git error'}")
        return self.head()

    def history(self, count: int = 10) -> List[CommitInfo]:
        """Return up to ``count`` recent commits, newest first."""

        result = self._run_git(["log", "--oneline", "-n", str(max(count, 1))], check=False)
        if result.returncode != 0:
            return []
        entries: List[CommitInfo] = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            sha, _, message = line.partition(" ")
            entries.append(CommitInfo(hash=sha, message=message))
        return entries


def _execute(cwd: Path, args: Sequence[str], *, check: bool) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"git {' '.join(args)} could not start: {error}") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


# --------------------------------------------------------------- commit policy
def detect_commit_type(task_name: str, action: str = "") -> str:
    """Infer a conventional-commit type from the task name and action text."""

    combined = f"{task_name} {action}".lower()
    if any(keyword in combined for keyword in _FIX_KEYWORDS):
        return "fix"
    if any(keyword in combined for keyword in _REFACTOR_KEYWORDS):
        return "refactor"
    if any(keyword in combined for keyword in _DOCS_KEYWORDS):
        return "docs"
    return "feat"


def build_commit_message(phase: str, plan_number: int, task_name: str, action: str = "") -> str:
    """Return ``{type}({phase}-{plan}): {description}`` for a task."""

    commit_type = detect_commit_type(task_name, action)
    description = _TASK_PREFIX_RE.sub("", task_name).strip()
    if description:
        description = description[0].lower() + description[1:]
    return f"{commit_type}({phase_number(phase)}-{plan_number:02d}): {description}"


class GitCommitService:
    """Stage and commit task changes without ever failing the task.

    When no repository is found the service runs in commit-less mode: every
    call is a no-op and the downgrade is logged once.
    """

    def __init__(self, repo: GitRepository | None) -> None:
        self._repo = repo
        self._warned_disabled = False

    @classmethod
    def for_workspace(cls, root: Path | str) -> "GitCommitService":
        """Bind to the repository containing ``root`` (commit-less when absent)."""

        try:
            repo = GitRepository.discover(root)
        except GitError as error:
            LOGGER.warning("No git repository for %s; running without commits (%s)", root, error)
            service = cls(None)
            service._warned_disabled = True
            return service
        return cls(repo)

    @property
    def enabled(self) -> bool:
        return self._repo is not None

    @property
    def repo(self) -> GitRepository | None:
        return self._repo

    def stageable_paths(self, files: Iterable[str]) -> list[str]:
        """Filter ``files`` to concrete paths that exist on disk."""

        if self._repo is None:
            return []
        concrete: list[str] = []
        for path in filter_placeholder_paths(files):
            candidate = Path(path)
            absolute = candidate if candidate.is_absolute() else self._repo.root / candidate
            if not absolute.exists():
                LOGGER.debug("Skipping missing path %s", path)
                continue
            try:
                concrete.append(absolute.resolve().relative_to(self._repo.root).as_posix())
            except ValueError:
                LOGGER.warning("Skipping path outside the repository: %s", path)
        return concrete

    async def stage(self, files: Sequence[str] | None) -> tuple[str, ...]:
        """Stage ``files`` (or everything when ``files`` is empty).

        Returns the staged paths; ``("*",)`` marks a stage-all. Raises
        :class:`GitError` on git failure.
        """

        repo = self._require_repo()
        if repo is None:
            return ()
        if not files:
            await asyncio.to_thread(repo.stage_all)
            return ("*",)
        paths = self.stageable_paths(files)
        if not paths:
            return ()
        await asyncio.to_thread(repo.stage_paths, paths)
        return tuple(paths)

    async def commit(self, message: str, *, paths: Sequence[str] = ()) -> str | None:
        """Create a commit and return its hash (``None`` if nothing changed)."""

        repo = self._require_repo()
        if repo is None:
            return None
        scoped = [path for path in paths if path != "*"]
        return await asyncio.to_thread(repo.commit, message, paths=scoped)

    async def commit_task(self, plan: Plan, task: Task) -> CommitResult:
        """Stage and commit the changes for ``task``; failures become warnings."""

        message = build_commit_message(plan.phase, plan.plan_number, task.name, task.action)
        if self._require_repo() is None:
            return CommitResult(message=message)
        try:
            staged = await self.stage(list(task.files))
            if not staged:
                LOGGER.warning(
                    "Task %d (%s): none of the declared files exist; nothing staged", task.id, task.name
                )
                return CommitResult(message=message)
            commit_hash = await self.commit(message, paths=staged)
        except CommitError as error:
            LOGGER.warning("Commit for task %d (%s) failed: %s", task.id, task.name, error)
            return CommitResult(message=message, error=str(error))
        if commit_hash is None:
            LOGGER.info("Task %d (%s): no changes to commit", task.id, task.name)
        return CommitResult(hash=commit_hash, message=message, staged=staged)

    async def history(self, count: int = 10) -> List[CommitInfo]:
        """Return recent commits (empty in commit-less mode)."""

        repo = self._require_repo()
        if repo is None:
            return []
        return await asyncio.to_thread(repo.history, count)

    def _require_repo(self) -> GitRepository | None:
        if self._repo is None and not self._warned_disabled:
            LOGGER.warning("Git repository unavailable; commits are disabled for this run")
            self._warned_disabled = True
        return self._repo


__all__ = [
    "CommitInfo",
    "CommitResult",
    "GitCommitService",
    "GitError",
    "GitRepository",
    "build_commit_message",
    "detect_commit_type",
]
