"""Shared helpers for classifying ``files`` entries and path tokens in output."""

from __future__ import annotations

import re
from typing import Iterable

PLACEHOLDER_PHRASES: tuple[str, ...] = (
    "affected files",
    "if known",
    "list of files",
    "files to modify",
    "files modified",
    "path/to/",
    "tbd",
    "todo",
    "n/a",
    "none",
    "unknown",
    "various",
    "etc",
)

_BRACKETED_RE = re.compile(r"^\s*[\[<{(].*[\]>})]\s*$")
_ELLIPSIS_RE = re.compile(r"\.\.\.|…")
_WORDY_RE = re.compile(r"\S\s+\S")
_GLOB_CHARS = set("*?")

_PATH_TOKEN_RE = re.compile(
    r"""
    (?<![\w/.-])
    (?:
        (?:[A-Za-z]:|~)?[\\/]?(?:[\w.-]+[\\/])+[\w.-]+\.[A-Za-z0-9]{1,8}   # dir/sub/file.ext
      | [\w-]+(?:\.[\w-]+)*\.(?:py|pyi|ts|tsx|js|jsx|json|ya?ml|toml|md|rs|go|java|c|h|cpp|css|html|sh|cfg|ini|txt)
    )
    (?::\d+(?::\d+)?)?
    (?![\w])
    """,
    re.VERBOSE,
)


def is_placeholder_path(value: str) -> bool:
    """Return True when ``value`` is instructional text rather than a real path."""
    stripped = value.strip().strip("`\"'")
    if not stripped:
        return True
    if _BRACKETED_RE.match(stripped) or stripped[0] in "[<{" or stripped[-1] in "]>}":
        return True
    if _ELLIPSIS_RE.search(stripped):
        return True
    if any(char in _GLOB_CHARS for char in stripped):
        return True
    lowered = stripped.lower()
    if lowered in PLACEHOLDER_PHRASES:
        return True
    for phrase in PLACEHOLDER_PHRASES:
        if (" " in phrase or "/" in phrase) and phrase in lowered:
            return True
    if _WORDY_RE.search(stripped) and "/" not in stripped and "." not in stripped:
        return True
    return False


def filter_placeholder_paths(values: Iterable[str]) -> list[str]:
    """Return concrete paths from ``values`` with placeholders and duplicates removed."""
    concrete: list[str] = []
    seen: set[str] = set()
    for raw in values:
        candidate = normalise_path(raw)
        if not candidate or is_placeholder_path(candidate):
            continue
        if candidate in seen:
            continue
        seen.add(candidate)
        concrete.append(candidate)
    return concrete


def normalise_path(value: str) -> str:
    """Strip quoting, list markers and leading ``./`` from a path entry."""
    candidate = value.strip()
    candidate = re.sub(r"^[-*]\s+", "", candidate)
    candidate = candidate.strip("\"'`")
    candidate = candidate.replace("\\", "/")
    while candidate.startswith("./"):
        candidate = candidate[2:]
    return candidate.strip()


def find_path_tokens(text: str) -> list[str]:
    """Return file-path-shaped tokens in ``text`` in order of first appearance."""
    tokens: list[str] = []
    seen: set[str] = set()
    for match in _PATH_TOKEN_RE.finditer(text or ""):
        token = match.group(0)
        if token in seen:
            continue
        seen.add(token)
        tokens.append(token)
    return tokens


def path_token_spans(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` offsets of every path token in ``text``."""
    return [match.span() for match in _PATH_TOKEN_RE.finditer(text or "")]
