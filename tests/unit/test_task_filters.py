from __future__ import annotations

import pytest

from planexec.planning.task_filters import (
    filter_placeholder_paths,
    find_path_tokens,
    is_placeholder_path,
    normalise_path,
)


@pytest.mark.parametrize(
    "value",
    [
        "",
        "[affected files]",
        "<files to modify>",
        "{list of files}",
        "src/...",
        "src/*.py",
        "TBD",
        "none",
        "N/A",
        "path/to/module.py",
        "update the config loader",
    ],
)
def test_placeholders_are_recognised(value: str) -> None:
    assert is_placeholder_path(value)


@pytest.mark.parametrize("value", ["src/a.py", "README.md", "tests/unit/test_x.py", "Makefile"])
def test_concrete_paths_are_kept(value: str) -> None:
    assert not is_placeholder_path(value)


def test_normalise_path_strips_markers_and_quotes() -> None:
    assert normalise_path("- ./src/a.py") == "src/a.py"
    assert normalise_path("`src\\b.py`") == "src/b.py"


def test_filter_placeholder_paths_dedupes_in_order() -> None:
    values = ["src/a.py", "./src/a.py", "TBD", "docs/guide.md", "[whatever]"]

    assert filter_placeholder_paths(values) == ["src/a.py", "docs/guide.md"]


def test_find_path_tokens_keeps_line_suffixes() -> None:
    output = "Error in src/app/main.py:10 while loading config.yaml; see tests/test_x.py"

    assert find_path_tokens(output) == ["src/app/main.py:10", "config.yaml", "tests/test_x.py"]
