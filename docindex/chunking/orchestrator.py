"""Chunking orchestration: strategy selection, ordering, merging and metadata.

Flow for one ExtractedContent:
1) validate options
2) run the text strategy plus one table strategy per table and one multimodal
   strategy per image
3) order drafts by source position (tables/images anchor where they appeared)
4) merge undersized neighbours of the same segment when the union still fits
5) number the chunks and derive page number and heading path
"""
import bisect
import logging
import re
from typing import List, Optional

from docindex.chunking.options import ChunkingOptions, validate_options
from docindex.chunking.strategies import (
    Code,
    Draft,
    Multimodal,
    Recursive,
    Semantic,
    Strategy,
    TableStrategy,
    run_strategy,
)
from docindex.errors import ChunkingError
from docindex.schemas import Chunk, ChunkMetadata, ExtractedContent, Heading, PageSpan
from docindex.tokens import count_tokens
from docindex.utils import stable_id

logger = logging.getLogger(__name__)

_CODE_LINE = re.compile(
    r"^\s*(?:def |class |import |from \S+ import |#include|function |const |let |var |"
    r"public |private |return\b|if\s*\(|for\s*\(|\}|@\w)|[;{]\s*$"
)
_TERMINATOR = re.compile(r"[.!?](?:\s|$)")


def looks_like_code(text: str) -> bool:
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        return False
    hits = sum(1 for ln in lines if _CODE_LINE.search(ln))
    return hits / len(lines) >= 0.3


def looks_structured(text: str) -> bool:
    """Many short lines with few sentence terminators (lists, logs, CSV-like text)."""
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if len(lines) < 5:
        return False
    return len(_TERMINATOR.findall(text)) < 0.25 * len(lines)


def select_strategy(content: ExtractedContent, options: ChunkingOptions) -> Strategy:
    """Pick the strategy for the main text of a document.

    An explicit options.strategy wins. In auto mode a language hint or
    code-shaped text selects Code, structured line-oriented text selects
    Recursive and prose selects Semantic.
    """
    if options.strategy == "semantic":
        return Semantic()
    if options.strategy == "recursive":
        return Recursive()
    if options.strategy == "code":
        return Code(language=content.language)
    if content.language or looks_like_code(content.text):
        return Code(language=content.language)
    if looks_structured(content.text):
        return Recursive()
    return Semantic()


def _merge(drafts: List[Draft], text: str, options: ChunkingOptions) -> List[Draft]:
    merged: List[Draft] = []
    for d in drafts:
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and prev.segment == d.segment
            and prev.verbatim
            and d.verbatim
            and not prev.oversized
            and not d.oversized
            and (prev.tokens < options.min_tokens or d.tokens < options.min_tokens)
        ):
            body = text[prev.start:max(prev.end, d.end)]
            tokens = count_tokens(body, options.model_id)
            if tokens <= options.max_tokens:
                prev.content = body
                prev.end = max(prev.end, d.end)
                prev.tokens = tokens
                prev.merged = True
                continue
        merged.append(d)
    return merged


def _page_for(offset: int, pages: List[PageSpan], starts: List[int]) -> Optional[int]:
    if not pages:
        return None
    i = bisect.bisect_right(starts, offset) - 1
    if i < 0:
        return pages[0].number
    return pages[i].number


def _heading_path(offset: int, headings: List[Heading]) -> List[str]:
    stack: List[Heading] = []
    for h in headings:
        if h.offset > offset:
            break
        while stack and stack[-1].level >= h.level:
            stack.pop()
        stack.append(h)
    return [h.text for h in stack]


def chunk(
    content: ExtractedContent,
    options: Optional[ChunkingOptions] = None,
    document_id: str = "document",
) -> List[Chunk]:
    """Split extracted content into bounded, overlapping, ordered chunks.

    Args:
        content: Extractor output.
        options: Token budget and strategy (defaults when None).
        document_id: Owner id; chunk ids derive from it and the chunk index.

    Returns:
        List[Chunk]: Chunks with contiguous indices from 0; empty for empty content.

    Raises:
        ConfigurationError: Invalid options.
        ChunkingError: A produced chunk violates the size or content rules.
    """
    options = options or ChunkingOptions()
    validate_options(options)

    drafts: List[Draft] = []
    text = content.text
    if text.strip():
        strategy = select_strategy(content, options)
        logger.debug("Chunking %s with %s strategy", document_id, strategy.name)
        drafts.extend(run_strategy(strategy, content, options))
    for i in range(len(content.tables)):
        drafts.extend(run_strategy(TableStrategy(index=i), content, options))
    for i in range(len(content.images)):
        drafts.extend(run_strategy(Multimodal(index=i), content, options))

    # Anchored items sort ahead of text that starts at the same offset.
    drafts.sort(key=lambda d: (d.start, 0 if d.start == d.end else 1))
    drafts = _merge(drafts, text, options)

    pages = sorted(content.pages, key=lambda p: p.start)
    page_starts = [p.start for p in pages]
    headings = sorted(content.headings, key=lambda h: h.offset)

    chunks: List[Chunk] = []
    for index, d in enumerate(drafts):
        if not d.content.strip():
            raise ChunkingError("Produced an empty chunk", details={"document_id": document_id, "index": index})
        if d.tokens > options.max_tokens and not d.oversized:
            raise ChunkingError(
                "Chunk exceeds max_tokens without being flagged oversized",
                details={"document_id": document_id, "index": index, "tokens": d.tokens},
            )
        page = d.page_number if d.page_number is not None else _page_for(d.start, pages, page_starts)
        chunks.append(Chunk(
            id=stable_id(document_id, "chunk", index),
            document_id=document_id,
            index=index,
            content=d.content,
            start_offset=d.start,
            end_offset=d.end,
            token_count=d.tokens,
            metadata=ChunkMetadata(
                page_number=page,
                heading_path=_heading_path(d.start, headings),
                kind=d.kind,
                merged=d.merged,
                oversized=d.oversized,
                table_index=d.table_index,
                image_index=d.image_index,
                imports_prepended=d.imports_prepended,
            ),
        ))
    logger.info("Chunked %s into %d chunks", document_id, len(chunks))
    return chunks
