"""Content extraction: raw document bytes to ExtractedContent.

Provides:
- TextExtractor: plain text, Markdown (ATX headings, pipe tables), HTML
  (BeautifulSoup/lxml: h1..h4 headings, paragraphs, tables, images) and source
  code (language hint for the code chunking strategy).
- parse_content_type: media type and charset from a Content-Type value.

Unsupported content types raise ExtractionError.
"""
import re
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup
from bs4.element import Tag

from docindex.errors import ExtractionError
from docindex.schemas import ExtractedContent, Heading, Image, Table

CODE_TYPES: Dict[str, str] = {
    "text/x-python": "python",
    "application/x-python": "python",
    "text/x-script.python": "python",
    "text/javascript": "javascript",
    "application/javascript": "javascript",
    "text/x-typescript": "typescript",
    "application/typescript": "typescript",
    "text/x-java": "java",
    "text/x-java-source": "java",
    "text/x-go": "go",
    "text/x-rust": "rust",
    "text/x-c": "c",
    "text/x-c++": "cpp",
    "text/x-csharp": "csharp",
    "text/x-ruby": "ruby",
}

_MD_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_MD_TABLE_SEP = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")


def parse_content_type(content_type: Optional[str]) -> Tuple[str, str]:
    """Split "text/html; charset=latin-1" into ("text/html", "latin-1")."""
    if not content_type:
        return "text/plain", "utf-8"
    parts = [p.strip() for p in content_type.split(";")]
    media = parts[0].lower() or "text/plain"
    charset = "utf-8"
    for p in parts[1:]:
        if p.lower().startswith("charset="):
            charset = p.split("=", 1)[1].strip().strip('"') or "utf-8"
    return media, charset


def _split_row(line: str) -> List[str]:
    line = line.strip()
    if line.startswith("|"):
        line = line[1:]
    if line.endswith("|"):
        line = line[:-1]
    return [cell.strip() for cell in line.split("|")]


class _TextBuilder:
    """Accumulates paragraphs separated by blank lines and tracks offsets."""

    def __init__(self):
        self.parts: List[str] = []
        self.length = 0

    def offset(self) -> int:
        """Anchor for a non-text item: the end of the text so far."""
        return self.length

    def add(self, block: str) -> int:
        block = block.strip()
        if not block:
            return self.length
        start = self.length + (2 if self.parts else 0)
        if self.parts:
            self.parts.append("\n\n")
        self.parts.append(block)
        self.length = start + len(block)
        return start

    def text(self) -> str:
        return "".join(self.parts)


class TextExtractor:
    """Extractor for text-like formats."""

    def supports(self, content_type: str) -> bool:
        media, _ = parse_content_type(content_type)
        return media in ("text/plain", "text/markdown", "text/x-markdown", "text/html") or media in CODE_TYPES

    def extract(self, data: bytes, content_type: str, document_id: Optional[str] = None) -> ExtractedContent:
        """Extract text and structure from raw bytes.

        Args:
            data: Raw document bytes.
            content_type: Declared MIME type (parameters allowed).
            document_id: Used in error details only.

        Returns:
            ExtractedContent: Text plus headings, tables, images and language hint.

        Raises:
            ExtractionError: Unsupported type or undecodable bytes.
        """
        media, charset = parse_content_type(content_type)
        if not self.supports(media):
            raise ExtractionError(f"Unsupported content type: {media}", document_id=document_id, content_type=media)
        try:
            raw = data.decode(charset)
        except (LookupError, UnicodeDecodeError) as e:
            raise ExtractionError(
                f"Could not decode document as {charset}", document_id=document_id, content_type=media
            ) from e

        if media == "text/html":
            return self._html(raw)
        if media in ("text/markdown", "text/x-markdown"):
            return self._markdown(raw)
        if media in CODE_TYPES:
            return ExtractedContent(text=raw, language=CODE_TYPES[media], metadata={"content_type": media})
        return ExtractedContent(text=raw.strip(), metadata={"content_type": media})

    def _markdown(self, raw: str) -> ExtractedContent:
        lines = raw.splitlines()
        out = _TextBuilder()
        headings: List[Heading] = []
        tables: List[Table] = []
        paragraph: List[str] = []
        in_fence = False

        def flush() -> None:
            if paragraph:
                out.add("\n".join(paragraph))
                paragraph.clear()

        i = 0
        while i < len(lines):
            line = lines[i]
            if line.strip().startswith("```"):
                in_fence = not in_fence
                paragraph.append(line)
                i += 1
                continue
            if in_fence:
                paragraph.append(line)
                i += 1
                continue
            m = _MD_HEADING.match(line)
            if m:
                flush()
                title = m.group(2).strip()
                offset = out.add(title)
                headings.append(Heading(text=title, level=len(m.group(1)), offset=offset))
                i += 1
                continue
            if "|" in line and i + 1 < len(lines) and _MD_TABLE_SEP.match(lines[i + 1]):
                flush()
                headers = _split_row(line)
                rows: List[List[str]] = []
                i += 2
                while i < len(lines) and "|" in lines[i] and lines[i].strip():
                    rows.append(_split_row(lines[i]))
                    i += 1
                tables.append(Table(headers=headers, rows=rows, offset=out.offset()))
                continue
            if not line.strip():
                flush()
            else:
                paragraph.append(line)
            i += 1
        flush()
        return ExtractedContent(
            text=out.text(),
            headings=headings,
            tables=tables,
            metadata={"content_type": "text/markdown"},
        )

    def _html(self, raw: str) -> ExtractedContent:
        soup = BeautifulSoup(raw, "lxml")

        # Remove script/style
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        out = _TextBuilder()
        headings: List[Heading] = []
        tables: List[Table] = []
        images: List[Image] = []

        root = soup.body if soup.body else soup
        for el in root.descendants:
            if not isinstance(el, Tag):
                continue
            if el.name in ["h1", "h2", "h3", "h4"]:
                title = el.get_text(" ", strip=True)
                if title:
                    offset = out.add(title)
                    headings.append(Heading(text=title, level=int(el.name[1]), offset=offset))
            elif el.name in ["p", "li", "pre", "blockquote"]:
                if el.find_parent(["p", "li", "table", "pre", "blockquote"]) is not None:
                    continue
                if el.name == "pre":
                    txt = el.get_text()
                else:
                    txt = re.sub(r"\s+", " ", el.get_text(" ", strip=True)).strip()
                if txt:
                    out.add(txt)
            elif el.name == "table":
                if el.find_parent("table") is not None:
                    continue
                tables.append(self._html_table(el, out.offset()))
            elif el.name == "img":
                alt = (el.get("alt") or el.get("title") or "").strip()
                caption = alt or None
                figure = el.find_parent("figure")
                if figure is not None:
                    figcaption = figure.find("figcaption")
                    if figcaption is not None:
                        caption = figcaption.get_text(" ", strip=True) or caption
                images.append(Image(caption=caption, offset=out.offset()))

        text = out.text()
        # Fallback if nothing parsed
        if not text and not tables:
            text = re.sub(r"\s+", " ", soup.get_text(" ", strip=True)).strip()
        title = soup.title.get_text(strip=True) if soup.title else None
        return ExtractedContent(
            text=text,
            headings=headings,
            tables=tables,
            images=images,
            metadata={"content_type": "text/html", "title": title} if title else {"content_type": "text/html"},
        )

    def _html_table(self, table: Tag, offset: int) -> Table:
        rows: List[List[str]] = []
        headers: List[str] = []
        for tr in table.find_all("tr"):
            if tr.find_parent("table") is not table:
                continue
            cells = tr.find_all(["th", "td"])
            values = [c.get_text(" ", strip=True) for c in cells]
            if not headers and cells and all(c.name == "th" for c in cells):
                headers = values
            elif values:
                rows.append(values)
        caption_tag = table.find("caption")
        caption = caption_tag.get_text(" ", strip=True) if caption_tag is not None else None
        return Table(headers=headers, rows=rows, caption=caption or None, offset=offset)
