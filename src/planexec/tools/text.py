"""Bounded truncation of diagnostic output that keeps file paths intact."""

from __future__ import annotations

from ..planning.task_filters import path_token_spans

__all__ = ["DEFAULT_CONTEXT_CHARS", "truncate_for_context"]

DEFAULT_CONTEXT_CHARS = 2000

# Share of the budget kept from the head; the head usually carries the error
# type and the earliest file reference.
_HEAD_SHARE = 0.65
_EXCERPT_RADIUS = 120
_MIN_SEGMENT = 40


def truncate_for_context(text: str, limit: int = DEFAULT_CONTEXT_CHARS) -> str:
    """Shorten ``text`` to roughly ``limit`` characters by eliding the middle.

    Cut points are moved off path tokens so no path is severed, and when
    neither the kept head nor the kept tail contains a path, a short excerpt
    around the first path in the original is spliced in.
    Head and tail each keep at least half of a small ``limit``; only a path
    token longer than the budget can make the result exceed it.
    """
    if text is None:
        return ""
    if limit <= 0 or len(text) <= limit:
        return text

    spans = path_token_spans(text)
    min_segment = min(_MIN_SEGMENT, max(limit // 2, 1))
    head_budget = max(int(limit * _HEAD_SHARE), min_segment)
    tail_budget = max(limit - head_budget, min_segment)

    head_end = _retreat_outside_spans(head_budget, spans)
    tail_start = _advance_outside_spans(len(text) - tail_budget, spans)
    if tail_start <= head_end:
        return text

    head = text[:head_end]
    tail = text[tail_start:]
    excerpt = ""
    if spans and not _contains_span(spans, 0, head_end) and not _contains_span(spans, tail_start, len(text)):
        start, end = spans[0]
        excerpt_start = _retreat_outside_spans(max(start - _EXCERPT_RADIUS, head_end), spans, floor=head_end)
        excerpt_end = _advance_outside_spans(min(end + _EXCERPT_RADIUS, tail_start), spans, ceiling=tail_start)
        excerpt = text[excerpt_start:excerpt_end]
        trim = len(excerpt)
        if trim < len(head) - min_segment:
            head = head[: _retreat_outside_spans(len(head) - trim, spans)]
        omitted_before = excerpt_start - len(head)
        omitted_after = tail_start - excerpt_end
        return (
            f"{head}{_marker(omitted_before)}{excerpt}{_marker(omitted_after)}{tail}"
        )

    return f"{head}{_marker(tail_start - head_end)}{tail}"


def _marker(omitted: int) -> str:
    if omitted <= 0:
        return ""
    return f"\n...[{omitted} chars truncated]...\n"


def _contains_span(spans: list[tuple[int, int]], start: int, end: int) -> bool:
    return any(span_start >= start and span_end <= end for span_start, span_end in spans)


def _retreat_outside_spans(index: int, spans: list[tuple[int, int]], *, floor: int = 0) -> int:
    """Move ``index`` left until it does not fall inside a path token."""
    for span_start, span_end in spans:
        if span_start < index < span_end:
            return max(span_start, floor)
    return max(index, floor)


def _advance_outside_spans(index: int, spans: list[tuple[int, int]], *, ceiling: int | None = None) -> int:
    """Move ``index`` right until it does not fall inside a path token."""
    for span_start, span_end in spans:
        if span_start < index < span_end:
            index = span_end
            break
    if ceiling is not None:
        return min(index, ceiling)
    return index
