"""Pydantic schemas for pipeline records and the public API contracts.

Defines:
- Document / DocumentStatus: document lifecycle record (written by the job tracker).
- ExtractedContent (+ Heading, Table, Image, PageSpan): extractor output, immutable.
- Chunk / ChunkMetadata: bounded spans of a document, optionally embedded.
- ProcessingJob / JobStage / JobEvent: job state machine records and events.
- SearchFilters / SearchResult / SearchRequest / SearchResponse: query contracts.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Document(BaseModel):
    """A document submitted for indexing.

    Attributes:
        id: Stable document identifier.
        title: Display title.
        size_bytes: Size of the raw upload.
        content_type: Declared MIME type.
        status: Lifecycle status, mutated only by the job tracker.
        error_message: Last failure message when status is error.
        chunk_count: Number of indexed chunks after completion.
        processing_ms: Total processing duration of the last finished job.
    """
    id: str
    title: str
    size_bytes: int = 0
    content_type: str = "text/plain"
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: Optional[str] = None
    chunk_count: int = 0
    processing_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Extractor output ---------------------------------------------------------


class Heading(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    level: int = 1
    offset: int = 0


class Table(BaseModel):
    model_config = ConfigDict(frozen=True)

    headers: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)
    caption: Optional[str] = None
    page_number: Optional[int] = None
    offset: Optional[int] = None  # position in ExtractedContent.text where the table appeared


class Image(BaseModel):
    model_config = ConfigDict(frozen=True)

    caption: Optional[str] = None
    ocr_text: Optional[str] = None
    page_number: Optional[int] = None
    offset: Optional[int] = None


class PageSpan(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    start: int
    end: int


class ExtractedContent(BaseModel):
    """Raw content produced by a format-specific extractor.

    Attributes:
        text: Plain text of the document.
        headings: Heading markers with character offsets into `text`.
        tables: Tables as header + rows of cells.
        images: Images with optional captions / OCR text.
        pages: Page boundaries for paginated sources.
        language: Programming language hint when the text is source code.
        metadata: Free-form extractor metadata (author, page count, ...).
    """
    model_config = ConfigDict(frozen=True)

    text: str = ""
    headings: List[Heading] = Field(default_factory=list)
    tables: List[Table] = Field(default_factory=list)
    images: List[Image] = Field(default_factory=list)
    pages: List[PageSpan] = Field(default_factory=list)
    language: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# --- Chunks -------------------------------------------------------------------


ChunkKind = Literal["text", "code", "table", "image-caption"]


class ChunkMetadata(BaseModel):
    page_number: Optional[int] = None
    heading_path: List[str] = Field(default_factory=list)
    kind: ChunkKind = "text"
    merged: bool = False
    oversized: bool = False
    table_index: Optional[int] = None
    image_index: Optional[int] = None
    imports_prepended: bool = False
    dimension_mismatch: Optional[Dict[str, int]] = None


class Chunk(BaseModel):
    """A bounded contiguous span of a document's content.

    Attributes:
        id: Deterministic identifier derived from document id and index.
        document_id: Owning document.
        index: Zero-based position within the document (after merging).
        content: Chunk text (never empty).
        start_offset / end_offset: Span in the extracted text.
        token_count: Tokens of `content` for the chunking model.
        metadata: Page, heading path, kind and flags.
        embedding: Vector filled in by the embedding pipeline.
    """
    id: str
    document_id: str
    index: int
    content: str = Field(..., min_length=1)
    start_offset: int
    end_offset: int
    token_count: int
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    embedding: Optional[List[float]] = None


# --- Processing jobs ----------------------------------------------------------


class JobStage(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETED, JobStage.ERROR)


class ProcessingJob(BaseModel):
    id: str
    document_id: str
    stage: JobStage = JobStage.PENDING
    progress: float = 0.0
    attempt: int = 1
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    error: Optional[str] = None


class JobEvent(BaseModel):
    """A stage transition or progress update published by the job tracker."""
    job_id: str
    document_id: str
    stage: JobStage
    progress: float
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# --- Search -------------------------------------------------------------------


class SearchFilters(BaseModel):
    """Restrictions applied before top-k selection.

    Attributes:
        document_ids: Only chunks of these documents.
        kinds: Only chunks of these content kinds.
    """
    document_ids: Optional[List[str]] = None
    kinds: Optional[List[ChunkKind]] = None


class SearchResult(BaseModel):
    chunk_id: str
    document_id: str
    content: str
    vector_score: float
    keyword_score: float
    fused_score: float
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    document_title: Optional[str] = None


class SearchRequest(BaseModel):
    """Request body for hybrid search.

    Attributes:
        query: Query text (must not be blank).
        k: Number of results (defaults to settings.SEARCH_TOP_K).
        alpha: Vector weight in [0, 1] (defaults to settings.SEARCH_DEFAULT_ALPHA).
        document_ids: Optional document restriction.
        kinds: Optional chunk kind restriction.
    """
    query: str = Field(..., description="Query text")
    k: Optional[int] = Field(default=None, ge=1, le=200)
    alpha: Optional[float] = None
    document_ids: Optional[List[str]] = None
    kinds: Optional[List[ChunkKind]] = None


class SearchResponse(BaseModel):
    results: List[SearchResult]
    latency_ms: int
    alpha: float
