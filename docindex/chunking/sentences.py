"""Span helpers: sentence splitting, separator splitting and whitespace trimming.

All functions return (start, end) character spans into the original string so
chunk contents stay verbatim slices of the source.
"""
import re
from typing import List, Optional, Pattern, Sequence, Tuple

Span = Tuple[int, int]

ABBREVIATIONS = frozenset({
    "Dr.", "Mr.", "Mrs.", "Ms.", "Prof.", "Sr.", "Jr.", "St.",
    "Ph.D.", "M.D.", "B.A.", "M.A.", "B.S.", "M.S.",
    "i.e.", "e.g.", "etc.", "vs.", "Inc.", "Ltd.", "Co.", "No.", "Fig.", "cf.",
})

_SENTENCE_END = re.compile(r"([.!?]+[\"'”)\]]*)(?=\s)|\n[ \t]*\n")

# Hierarchy used by the recursive strategy, coarsest first.
RECURSIVE_SEPARATORS: Tuple[Pattern[str], ...] = (
    re.compile(r"\n[ \t]*\n\s*"),
    re.compile(r"\n"),
    re.compile(r"(?<=[.!?])\s+"),
    re.compile(r"\s+"),
)


def trim(text: str, start: int, end: int) -> Optional[Span]:
    """Shrink a span to exclude surrounding whitespace; None if nothing is left."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return start, end


def split_sentences(text: str, start: int = 0, end: Optional[int] = None) -> List[Span]:
    """Split text[start:end] into sentence spans.

    Breaks after terminal punctuation followed by whitespace (unless the last
    word is a known abbreviation) and on blank lines.

    Args:
        text: Source string.
        start: Span start within text.
        end: Span end within text (defaults to len(text)).

    Returns:
        List[Span]: Non-empty, whitespace-trimmed sentence spans in order.
    """
    end = len(text) if end is None else end
    spans: List[Span] = []
    cursor = start
    for m in _SENTENCE_END.finditer(text, start, end):
        if m.group(1):
            stop = m.end(1)
            words = text[cursor:stop].split()
            if words and words[-1] in ABBREVIATIONS:
                continue
            next_cursor = stop
        else:
            stop = m.start()
            next_cursor = m.end()
        span = trim(text, cursor, stop)
        if span:
            spans.append(span)
        cursor = next_cursor
    span = trim(text, cursor, end)
    if span:
        spans.append(span)
    return spans


def split_on(text: str, start: int, end: int, separator: Pattern[str]) -> List[Span]:
    """Split text[start:end] at every match of `separator` (matches are dropped)."""
    pieces: List[Span] = []
    cursor = start
    for m in separator.finditer(text, start, end):
        if m.start() == m.end():
            continue
        span = trim(text, cursor, m.start())
        if span:
            pieces.append(span)
        cursor = m.end()
    span = trim(text, cursor, end)
    if span:
        pieces.append(span)
    return pieces


def line_spans(text: str, start: int, end: int) -> List[Span]:
    """Non-blank lines of text[start:end] as spans, keeping leading indentation."""
    spans: List[Span] = []
    cursor = start
    while cursor < end:
        nl = text.find("\n", cursor, end)
        stop = end if nl == -1 else nl
        line_end = stop
        while line_end > cursor and text[line_end - 1].isspace():
            line_end -= 1
        if line_end > cursor and text[cursor:line_end].strip():
            spans.append((cursor, line_end))
        cursor = stop + 1
    return spans


def recursive_spans(
    text: str,
    start: int,
    end: int,
    fits,
    separators: Sequence[Pattern[str]] = RECURSIVE_SEPARATORS,
) -> List[Span]:
    """Split a span with progressively finer separators until every piece fits.

    Args:
        text: Source string.
        start / end: Span to split.
        fits: Callable (start, end) -> bool deciding whether a piece is small enough.
        separators: Remaining separator hierarchy.

    Returns:
        List[Span]: Pieces in order; a piece that cannot be split further is
            returned as-is even if it does not fit.
    """
    span = trim(text, start, end)
    if span is None:
        return []
    start, end = span
    if fits(start, end) or not separators:
        return [span]
    pieces = split_on(text, start, end, separators[0])
    if len(pieces) <= 1:
        return recursive_spans(text, start, end, fits, separators[1:])
    out: List[Span] = []
    for ps, pe in pieces:
        out.extend(recursive_spans(text, ps, pe, fits, separators[1:]))
    return out
