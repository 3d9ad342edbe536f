"""Chunking strategies as tagged variants plus the span packers they share.

Provides:
- Semantic / Recursive / Code / TableStrategy / Multimodal: strategy variants.
- run_strategy: dispatch a variant to its runner.
- pack_spans: greedy packing of ordered spans with sentence-level overlap.

Runners return Draft records; the orchestrator sorts, merges and numbers them.
"""
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from docindex.chunking.options import ChunkingOptions
from docindex.chunking.sentences import (
    Span,
    line_spans,
    recursive_spans,
    split_sentences,
    trim,
)
from docindex.schemas import ExtractedContent, Image, Table
from docindex.tokens import count_tokens


@dataclass
class Draft:
    """An unnumbered chunk candidate.

    `start`/`end` are offsets into the extracted text. Table and image drafts
    are zero-width anchors at the position the item appeared.
    """
    content: str
    start: int
    end: int
    tokens: int
    kind: str = "text"
    segment: str = "text"
    oversized: bool = False
    merged: bool = False
    table_index: Optional[int] = None
    image_index: Optional[int] = None
    imports_prepended: bool = False
    page_number: Optional[int] = None

    @property
    def verbatim(self) -> bool:
        """True if content is exactly text[start:end]."""
        return self.kind in ("text", "code") and not self.imports_prepended


# --- Variants -------------------------------------------------------------------


@dataclass(frozen=True)
class Semantic:
    name: str = "semantic"


@dataclass(frozen=True)
class Recursive:
    name: str = "recursive"


@dataclass(frozen=True)
class Code:
    language: Optional[str] = None
    name: str = "code"


@dataclass(frozen=True)
class TableStrategy:
    index: int = 0
    name: str = "table"


@dataclass(frozen=True)
class Multimodal:
    index: int = 0
    name: str = "multimodal"


Strategy = Union[Semantic, Recursive, Code, TableStrategy, Multimodal]


# --- Packing --------------------------------------------------------------------


def pack_spans(
    text: str,
    spans: Sequence[Span],
    options: ChunkingOptions,
    kind: str = "text",
    segment: str = "text",
    overlap_tokens: Optional[int] = None,
) -> List[Draft]:
    """Greedily pack ordered spans into drafts within options.max_tokens.

    Each draft is the verbatim slice from its first span's start to its last
    span's end. After a draft closes, the next one is seeded with the longest
    run of trailing spans whose tokens stay within the overlap budget; the
    overlap never includes the closed draft's first span and is shrunk so the
    next span still fits. A span that alone exceeds the budget becomes its own
    draft flagged oversized.

    Args:
        text: Source string the spans index into.
        spans: Ordered, non-overlapping spans.
        options: Token budget.
        kind: Chunk kind stamped on every draft.
        segment: Segment key (drafts merge only within one segment).
        overlap_tokens: Override for options.overlap_tokens (0 disables overlap).

    Returns:
        List[Draft]: Drafts in source order.
    """
    budget = options.max_tokens
    overlap = options.overlap_tokens if overlap_tokens is None else overlap_tokens

    def count(start: int, end: int) -> int:
        return count_tokens(text[start:end], options.model_id)

    def draft(first: int, last: int, oversized: bool = False) -> Draft:
        start, end = spans[first][0], spans[last][1]
        return Draft(
            content=text[start:end],
            start=start,
            end=end,
            tokens=count(start, end),
            kind=kind,
            segment=segment,
            oversized=oversized,
        )

    drafts: List[Draft] = []
    first, last = 0, -1  # current draft covers spans[first..last]; empty when last < first
    i = 0
    while i < len(spans):
        span_start, span_end = spans[i]
        if last < first:
            if count(span_start, span_end) > budget:
                drafts.append(draft(i, i, oversized=True))
                first, last = i + 1, i
            else:
                first, last = i, i
            i += 1
            continue
        if count(spans[first][0], span_end) <= budget:
            last = i
            i += 1
            continue

        drafts.append(draft(first, last))
        seed = None
        if overlap > 0:
            for j in range(last, first, -1):
                if count(spans[j][0], spans[last][1]) > overlap:
                    break
                if count(spans[j][0], span_end) > budget:
                    break
                seed = j
        if seed is None:
            first, last = i, i - 1
        else:
            first, last = seed, i - 1

    if last >= first:
        drafts.append(draft(first, last))
    return drafts


# --- Runners --------------------------------------------------------------------


def _run_semantic(strategy: Semantic, content: ExtractedContent, options: ChunkingOptions) -> List[Draft]:
    text = content.text
    return pack_spans(text, split_sentences(text), options)


def _run_recursive(strategy: Recursive, content: ExtractedContent, options: ChunkingOptions) -> List[Draft]:
    text = content.text

    def fits(start: int, end: int) -> bool:
        return count_tokens(text[start:end], options.model_id) <= options.max_tokens

    spans = recursive_spans(text, 0, len(text), fits)
    return pack_spans(text, spans, options)


# Top-level definitions that open a new code block.
_BLOCK_START = re.compile(
    r"(?:@\w"
    r"|(?:async\s+)?def\s"
    r"|class\s"
    r"|(?:export\s+)?(?:default\s+)?(?:async\s+)?function\b"
    r"|(?:export\s+)?(?:abstract\s+)?(?:class|interface|enum)\s"
    r"|(?:public|private|protected|internal|static)\s"
    r"|func\s|fn\s|pub\s+(?:fn|struct|enum|trait|impl|mod)\s|impl\b|struct\s|trait\s"
    r"|type\s+\w+\s+(?:struct|interface)\b)"
)
_IMPORT_LINE = re.compile(
    r"^(?:import\s|from\s+\S+\s+import\s|#include\s*[<\"]|using\s+[\w.]+\s*;"
    r"|(?:const|let|var)\s+\w+\s*=\s*require\(|use\s+[\w:]+)",
    re.M,
)
_IDENT = re.compile(r"^[A-Za-z_$][\w$]*$")


def imported_names(line: str) -> Optional[List[str]]:
    """Names an import line binds, or None if they cannot be determined.

    Handles Python `import`/`from ... import`, ES module imports and CommonJS
    `require`. Other forms (C includes, C# using, Rust use) return None and are
    treated as needed by every chunk.
    """
    line = line.strip().rstrip(";")
    m = re.match(r"from\s+\S+\s+import\s+(.+)", line)
    if m is None:
        m = re.match(r"import\s+(.+?)\s+from\s+", line)
    if m is None:
        require = re.match(r"(?:const|let|var)\s+(\w+)\s*=\s*require\(", line)
        if require:
            return [require.group(1)]
        m = re.match(r"import\s+(.+)", line)
    if m is None:
        return None
    names = []
    for item in re.split(r",", m.group(1).strip("(){} ")):
        item = item.strip().strip("{}() ")
        if not item or item == "*":
            continue
        if " as " in item:
            item = item.split(" as ")[-1].strip()
        else:
            item = item.split(".")[0].strip()
        if _IDENT.match(item):
            names.append(item)
    return names or None


def _block_spans(text: str, start: int, end: int, indented: bool) -> List[Span]:
    """Split text[start:end] at definition lines.

    Top-level pass splits at column-0 definitions; the indented pass splits at
    definitions at any indentation. A definition directly after a decorator
    stays with the decorator.
    """
    prefix = r"^[ \t]+" if indented else r"^"
    starts = [start]
    prev_line = ""
    for line_start, line_end in line_spans(text, start, end):
        line = text[line_start:line_end]
        if line_start > start and re.match(prefix + _BLOCK_START.pattern, line):
            if not prev_line.lstrip().startswith("@"):
                starts.append(line_start)
        prev_line = line
    starts.append(end)
    blocks = []
    for a, b in zip(starts, starts[1:]):
        span = trim(text, a, b)
        if span:
            blocks.append(span)
    return blocks


class _CodePacker:
    def __init__(self, text: str, options: ChunkingOptions):
        self.text = text
        self.options = options
        self.imports: List[Tuple[Span, Optional[List[str]]]] = []
        for m in _IMPORT_LINE.finditer(text):
            line_end = text.find("\n", m.start())
            if line_end == -1:
                line_end = len(text)
            self.imports.append(((m.start(), line_end), imported_names(text[m.start():line_end])))

    def prefix_for(self, start: int, end: int) -> str:
        body = self.text[start:end]
        needed = []
        for (imp_start, imp_end), names in self.imports:
            if imp_start >= start:
                continue
            if names is None or any(re.search(r"\b%s\b" % re.escape(n), body) for n in names):
                needed.append(self.text[imp_start:imp_end].strip())
        return "\n".join(needed) + "\n\n" if needed else ""

    def render(self, start: int, end: int) -> Tuple[str, bool]:
        prefix = self.prefix_for(start, end)
        return prefix + self.text[start:end], bool(prefix)

    def fits(self, start: int, end: int) -> bool:
        content, _ = self.render(start, end)
        return count_tokens(content, self.options.model_id) <= self.options.max_tokens

    def draft(self, start: int, end: int, oversized: bool = False) -> Draft:
        content, prepended = self.render(start, end)
        tokens = count_tokens(content, self.options.model_id)
        return Draft(
            content=content,
            start=start,
            end=end,
            tokens=tokens,
            kind="code",
            segment="text",
            oversized=oversized or tokens > self.options.max_tokens,
            imports_prepended=prepended,
        )

    def finer(self, start: int, end: int, depth: int) -> List[Span]:
        if depth == 0:
            nested = _block_spans(self.text, start, end, indented=True)
            if len(nested) > 1:
                return nested
        return line_spans(self.text, start, end)

    def pack(self, spans: Sequence[Span], depth: int = 0) -> List[Draft]:
        drafts: List[Draft] = []
        current: Optional[Span] = None
        for start, end in spans:
            if current is not None and self.fits(current[0], end):
                current = (current[0], end)
                continue
            if current is not None:
                drafts.append(self.draft(*current))
                current = None
            if self.fits(start, end):
                current = (start, end)
                continue
            pieces = self.finer(start, end, depth)
            if len(pieces) > 1:
                drafts.extend(self.pack(pieces, depth + 1))
            else:
                drafts.append(self.draft(start, end, oversized=True))
        if current is not None:
            drafts.append(self.draft(*current))
        return drafts


def _run_code(strategy: Code, content: ExtractedContent, options: ChunkingOptions) -> List[Draft]:
    text = content.text
    packer = _CodePacker(text, options)
    return packer.pack(_block_spans(text, 0, len(text), indented=False))


def _table_lines(table: Table) -> Tuple[str, List[str]]:
    head = []
    if table.caption:
        head.append(table.caption.strip())
    if table.headers:
        head.append(" | ".join(h.strip() for h in table.headers))
    rows = [" | ".join(cell.strip() for cell in row) for row in table.rows]
    return "\n".join(head), [r for r in rows if r.strip(" |")]


def _run_table(strategy: TableStrategy, content: ExtractedContent, options: ChunkingOptions) -> List[Draft]:
    table = content.tables[strategy.index]
    anchor = table.offset if table.offset is not None else len(content.text)
    header, rows = _table_lines(table)
    segment = f"table:{strategy.index}"

    def render(group: List[str]) -> str:
        return "\n".join([header] + group if header else group)

    def draft(group: List[str], oversized: bool = False) -> Draft:
        body = render(group)
        return Draft(
            content=body,
            start=anchor,
            end=anchor,
            tokens=count_tokens(body, options.model_id),
            kind="table",
            segment=segment,
            oversized=oversized,
            table_index=strategy.index,
            page_number=table.page_number,
        )

    if not rows:
        return [draft([])] if header else []

    drafts: List[Draft] = []
    group: List[str] = []
    for row in rows:
        if count_tokens(render(group + [row]), options.model_id) <= options.max_tokens:
            group.append(row)
            continue
        if group:
            drafts.append(draft(group))
            group = []
        if count_tokens(render([row]), options.model_id) > options.max_tokens:
            drafts.append(draft([row], oversized=True))
        else:
            group = [row]
    if group:
        drafts.append(draft(group))
    return drafts


def _image_description(image: Image) -> str:
    parts = [p.strip() for p in (image.caption, image.ocr_text) if p and p.strip()]
    return "\n".join(parts)


def _run_multimodal(strategy: Multimodal, content: ExtractedContent, options: ChunkingOptions) -> List[Draft]:
    image = content.images[strategy.index]
    description = _image_description(image)
    if not description:
        return []
    anchor = image.offset if image.offset is not None else len(content.text)
    drafts = pack_spans(
        description,
        split_sentences(description),
        options,
        kind="image-caption",
        segment=f"image:{strategy.index}",
        overlap_tokens=0,
    )
    for d in drafts:
        d.start = d.end = anchor
        d.image_index = strategy.index
        d.page_number = image.page_number
    return drafts


_RUNNERS: Dict[type, Callable[..., List[Draft]]] = {
    Semantic: _run_semantic,
    Recursive: _run_recursive,
    Code: _run_code,
    TableStrategy: _run_table,
    Multimodal: _run_multimodal,
}


def run_strategy(strategy: Strategy, content: ExtractedContent, options: ChunkingOptions) -> List[Draft]:
    """Run one strategy variant over the content."""
    return _RUNNERS[type(strategy)](strategy, content, options)
