"""In-process vector + keyword index over embedded chunks.

Provides:
- VectorKeywordIndex: insertion-ordered entries with unit-normalised vectors and
  term counts; per-document replace/remove; candidate filtering.
- Vector scoring: cosine similarity via numpy.
- Keyword scoring modes:
    overlap: fraction of distinct query terms present in the chunk
    tf:      like overlap, each term weighted by tf / (tf + 1)
    bm25:    rank_bm25 BM25Okapi over the candidate pool, min-max normalised
"""
import itertools
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np
from rank_bm25 import BM25Okapi

from docindex.errors import EmbeddingError
from docindex.schemas import Chunk, ChunkMetadata, SearchFilters
from docindex.store import Store
from docindex.utils import content_hash, min_max_norm, tokenize

logger = logging.getLogger(__name__)

KEYWORD_MODES = ("overlap", "tf", "bm25")


@dataclass
class IndexEntry:
    seq: int
    chunk_id: str
    document_id: str
    content: str
    metadata: ChunkMetadata
    vector: np.ndarray
    tokens: List[str]
    terms: Counter
    content_hash: str


def _unit(vector: Iterable[float]) -> np.ndarray:
    v = np.asarray(list(vector), dtype=np.float32)
    norm = float(np.linalg.norm(v))
    if norm <= 1e-12:
        return v
    return v / norm


class VectorKeywordIndex:
    def __init__(self):
        self._entries: Dict[str, IndexEntry] = {}
        self._lock = threading.RLock()
        self._seq = itertools.count()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _entry(self, chunk: Chunk) -> IndexEntry:
        if chunk.embedding is None:
            raise EmbeddingError("Cannot index a chunk without an embedding", {"chunk_id": chunk.id})
        tokens = tokenize(chunk.content)
        return IndexEntry(
            seq=next(self._seq),
            chunk_id=chunk.id,
            document_id=chunk.document_id,
            content=chunk.content,
            metadata=chunk.metadata.model_copy(),
            vector=_unit(chunk.embedding),
            tokens=tokens,
            terms=Counter(tokens),
            content_hash=content_hash(chunk.content),
        )

    def add(self, chunks: Iterable[Chunk]) -> int:
        """Add (or re-add) embedded chunks; returns the number indexed."""
        entries = [self._entry(c) for c in chunks]
        with self._lock:
            for e in entries:
                self._entries.pop(e.chunk_id, None)
                self._entries[e.chunk_id] = e
        return len(entries)

    def remove_document(self, document_id: str) -> int:
        with self._lock:
            ids = [cid for cid, e in self._entries.items() if e.document_id == document_id]
            for cid in ids:
                del self._entries[cid]
        return len(ids)

    def replace_document(self, document_id: str, chunks: Iterable[Chunk]) -> int:
        """Swap a document's entries for `chunks` in one step."""
        entries = [self._entry(c) for c in chunks]
        with self._lock:
            for cid in [cid for cid, e in self._entries.items() if e.document_id == document_id]:
                del self._entries[cid]
            for e in entries:
                self._entries[e.chunk_id] = e
        logger.debug("Indexed %d chunks for document %s", len(entries), document_id)
        return len(entries)

    def document_ids(self) -> List[str]:
        with self._lock:
            return list(dict.fromkeys(e.document_id for e in self._entries.values()))

    def candidates(self, filters: Optional[SearchFilters] = None) -> List[IndexEntry]:
        """Entries passing `filters`, in insertion order."""
        with self._lock:
            entries = list(self._entries.values())
        if filters is None:
            return entries
        if filters.document_ids is not None:
            wanted = set(filters.document_ids)
            entries = [e for e in entries if e.document_id in wanted]
        if filters.kinds is not None:
            kinds = set(filters.kinds)
            entries = [e for e in entries if e.metadata.kind in kinds]
        return entries

    def vector_scores(self, query_vector: Iterable[float], entries: List[IndexEntry]) -> List[float]:
        """Cosine similarity of the query against each entry."""
        if not entries:
            return []
        q = _unit(query_vector)
        return [float(np.dot(e.vector, q)) if e.vector.shape == q.shape else 0.0 for e in entries]

    def keyword_scores(self, query_text: str, entries: List[IndexEntry], mode: str = "overlap") -> List[float]:
        """Keyword relevance in [0, 1] for each entry.

        Args:
            query_text: Raw query.
            entries: Candidate pool.
            mode: "overlap", "tf" or "bm25".

        Returns:
            List[float]: One score per entry (all zero for a query with no terms).
        """
        if not entries:
            return []
        q_tokens = tokenize(query_text)
        q_terms = list(dict.fromkeys(q_tokens))
        if not q_terms:
            return [0.0 for _ in entries]
        if mode == "overlap":
            return [sum(1 for t in q_terms if t in e.terms) / len(q_terms) for e in entries]
        if mode == "tf":
            return [
                sum(e.terms[t] / (e.terms[t] + 1.0) for t in q_terms if t in e.terms) / len(q_terms)
                for e in entries
            ]
        if mode == "bm25":
            if not any(e.tokens for e in entries):
                return [0.0 for _ in entries]
            bm25 = BM25Okapi([e.tokens for e in entries])
            return min_max_norm([float(s) for s in bm25.get_scores(q_tokens)])
        raise ValueError(f"Unknown keyword mode: {mode}")

    @classmethod
    def from_store(cls, store: Store) -> "VectorKeywordIndex":
        """Rebuild an index from persisted chunk records, in the order they were written."""
        index = cls()
        chunks = [Chunk.model_validate(r) for r in store.all("chunks")]
        chunks = [c for c in chunks if c.embedding is not None]
        index.add(chunks)
        logger.info("Rebuilt index with %d chunks from store", len(chunks))
        return index
