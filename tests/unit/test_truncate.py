from __future__ import annotations

from planexec.planning.task_filters import find_path_tokens
from planexec.tools.text import truncate_for_context


def test_short_text_is_returned_unchanged() -> None:
    text = "FAILED tests/test_a.py::test_one"

    assert truncate_for_context(text, 200) == text
    assert truncate_for_context(text, len(text)) == text


def test_long_output_keeps_a_path_from_the_middle() -> None:
    text = "x" * 1500 + " see src/pkg/module.py:42 here " + "y" * 1500

    result = truncate_for_context(text, 200)

    assert len(result) < len(text) // 2
    assert "src/pkg/module.py:42" in result
    assert "chars truncated" in result


def test_cut_point_never_severs_a_path() -> None:
    path = "src/long/path/name.py"
    text = "a" * 125 + f" {path} " + "b" * 1000

    result = truncate_for_context(text, 200)

    assert path in result
    for token in find_path_tokens(result):
        assert token in text


def test_head_and_tail_are_preserved() -> None:
    text = "Traceback (most recent call last):\n" + "frame\n" * 500 + "ValueError: boom"

    result = truncate_for_context(text, 300)

    assert result.startswith("Traceback (most recent call last):")
    assert result.endswith("ValueError: boom")


def test_small_limit_still_truncates() -> None:
    result = truncate_for_context("a" * 70, 10)

    assert result == "aaaaaa\n...[59 chars truncated]...\naaaaa"
