"""Hybrid retrieval over the vector + keyword index.

fused = alpha * vector_score + (1 - alpha) * keyword_score

Candidates are filtered before ranking, ties keep insertion order, identical
chunk contents are collapsed to the best-scoring one, and each search is
recorded in the query log (store collection "queries") when a store is set.
"""
import logging
import math
import time
from typing import Any, Dict, List, Optional

from docindex.embedding_pipeline import EmbeddingPipeline
from docindex.errors import ConfigurationError, InvalidQueryError, StoreError
from docindex.index import KEYWORD_MODES, VectorKeywordIndex
from docindex.obs import span
from docindex.schemas import SearchFilters, SearchResponse, SearchResult, utcnow
from docindex.store import Store
from docindex.utils import new_id

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class HybridSearch:
    def __init__(
        self,
        index: VectorKeywordIndex,
        pipeline: EmbeddingPipeline,
        store: Optional[Store] = None,
        default_alpha: float = 0.7,
        default_k: int = 8,
        keyword_mode: str = "overlap",
    ):
        if keyword_mode not in KEYWORD_MODES:
            raise ConfigurationError(f"Unknown keyword mode: {keyword_mode}", field="KEYWORD_MODE")
        self.index = index
        self.pipeline = pipeline
        self.store = store
        self.default_alpha = default_alpha
        self.default_k = default_k
        self.keyword_mode = keyword_mode

    def _validate(self, query_text: str, k: Optional[int], alpha: Optional[float]):
        if query_text is None or not query_text.strip():
            raise InvalidQueryError("Query must not be empty", field="query")
        k = self.default_k if k is None else k
        alpha = self.default_alpha if alpha is None else alpha
        if k < 1:
            raise InvalidQueryError("k must be at least 1", field="k")
        if math.isnan(alpha) or not 0.0 <= alpha <= 1.0:
            raise InvalidQueryError("alpha must be within [0, 1]", field="alpha")
        return k, float(alpha)

    def rank(
        self,
        query_text: str,
        query_vector: List[float],
        k: Optional[int] = None,
        alpha: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        """Rank indexed chunks for a query whose vector is already known.

        Args:
            query_text: Query used for keyword scoring.
            query_vector: Query embedding.
            k: Maximum results.
            alpha: Vector weight in [0, 1].
            filters: Candidate restrictions applied before ranking.

        Returns:
            List[SearchResult]: Up to k results, fused score descending.
        """
        k, alpha = self._validate(query_text, k, alpha)
        entries = self.index.candidates(filters)
        if not entries:
            return []
        vector = self.index.vector_scores(query_vector, entries)
        keyword = self.index.keyword_scores(query_text, entries, self.keyword_mode)

        scored = [
            (alpha * v + (1.0 - alpha) * kw, e, v, kw)
            for e, v, kw in zip(entries, vector, keyword)
        ]
        scored.sort(key=lambda t: (-t[0], t[1].seq))

        titles: Dict[str, Optional[str]] = {}
        seen = set()
        results: List[SearchResult] = []
        for fused, e, v, kw in scored:
            if e.content_hash in seen:
                continue
            seen.add(e.content_hash)
            results.append(SearchResult(
                chunk_id=e.chunk_id,
                document_id=e.document_id,
                content=e.content,
                vector_score=v,
                keyword_score=kw,
                fused_score=fused,
                metadata=e.metadata,
                document_title=self._title(e.document_id, titles),
            ))
            if len(results) >= k:
                break
        return results

    def _title(self, document_id: str, titles: Dict[str, Optional[str]]) -> Optional[str]:
        if self.store is None:
            return None
        if document_id not in titles:
            record = self.store.get("documents", document_id)
            titles[document_id] = record.get("title") if record else None
        return titles[document_id]

    async def search(
        self,
        query_text: str,
        k: Optional[int] = None,
        alpha: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
    ) -> SearchResponse:
        """Embed the query and return the top-k hybrid results.

        Raises:
            InvalidQueryError: Blank query, alpha outside [0, 1] or k < 1.
        """
        k, alpha = self._validate(query_text, k, alpha)
        t0 = time.perf_counter()
        with span("search", {"k": k, "alpha": alpha, "mode": self.keyword_mode}):
            query_vector = await self.pipeline.embed_query(query_text)
            results = self.rank(query_text, query_vector, k=k, alpha=alpha, filters=filters)
        latency_ms = int((time.perf_counter() - t0) * 1000)
        logger.info("Search returned %d results in %dms (alpha=%.2f)", len(results), latency_ms, alpha)
        self._log_query(query_text, k, alpha, results, latency_ms)
        return SearchResponse(results=results, latency_ms=latency_ms, alpha=alpha)

    def _log_query(self, query_text: str, k: int, alpha: float, results: List[SearchResult], latency_ms: int) -> None:
        if self.store is None:
            return
        query_id = new_id()
        record = {
            "id": query_id,
            "query_text": query_text,
            "k": k,
            "alpha": alpha,
            "result_count": len(results),
            "top_score": results[0].fused_score if results else None,
            "response_time_ms": latency_ms,
            "results": [
                {"chunk_id": r.chunk_id, "document_id": r.document_id, "score": r.fused_score, "preview": r.content[:PREVIEW_CHARS]}
                for r in results
            ],
            "created_at": utcnow().isoformat(),
        }
        try:
            self.store.put("queries", query_id, record)
        except StoreError as e:
            logger.warning("Could not record query log entry: %s", e)

    def recent_queries(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Query log records, newest first."""
        if self.store is None:
            return []
        return list(reversed(self.store.all("queries")))[:max(0, limit)]
