"""Read-side reporting over the record store.

Provides:
- ProcessingMetrics: in-process counters and timings recorded by the processor.
- Reporting: document listing, per-document chunks, system analytics and
  diagnostics computed from the documents, chunks, jobs and queries collections.
"""
import logging
import threading
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from docindex.jobs import JobTracker
from docindex.schemas import Document, DocumentStatus, utcnow
from docindex.store import Store

logger = logging.getLogger(__name__)

TOP_N = 5
RECENT_DOCUMENTS = 10
TIME_SERIES_DAYS = 30


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    return datetime.fromisoformat(str(value))


class _Timing:
    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.max = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        self.max = max(self.max, seconds)

    def as_dict(self) -> Dict[str, float]:
        mean = self.total / self.count if self.count else 0.0
        return {
            "count": self.count,
            "total_ms": round(self.total * 1000, 2),
            "mean_ms": round(mean * 1000, 2),
            "max_ms": round(self.max * 1000, 2),
        }


class ProcessingMetrics:
    """Counters for processed documents, stage timings, chunk counts and errors."""

    def __init__(self):
        self._lock = threading.Lock()
        self._documents: Counter = Counter()
        self._errors: Counter = Counter()
        self._stages: Dict[str, _Timing] = defaultdict(_Timing)
        self._embedding = _Timing()
        self._embedded_chunks = 0
        self._chunks: List[int] = []

    def observe_stage(self, stage: str, seconds: float) -> None:
        with self._lock:
            self._stages[stage].observe(seconds)

    def observe_embedding(self, chunk_count: int, seconds: float) -> None:
        with self._lock:
            self._embedding.observe(seconds)
            self._embedded_chunks += chunk_count

    def document_processed(self, content_type: str, status: str, chunk_count: int = 0) -> None:
        with self._lock:
            self._documents[(content_type, status)] += 1
            if status == DocumentStatus.COMPLETED.value:
                self._chunks.append(chunk_count)

    def processing_error(self, content_type: str, stage: str, error_type: str) -> None:
        with self._lock:
            self._errors[(content_type, stage, error_type)] += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            chunks = list(self._chunks)
            return {
                "documents_processed": [
                    {"content_type": ct, "status": status, "count": n}
                    for (ct, status), n in sorted(self._documents.items())
                ],
                "stage_durations": {stage: t.as_dict() for stage, t in sorted(self._stages.items())},
                "embedding": {**self._embedding.as_dict(), "chunks": self._embedded_chunks},
                "chunks_per_document": {
                    "count": len(chunks),
                    "mean": round(sum(chunks) / len(chunks), 2) if chunks else 0.0,
                    "max": max(chunks) if chunks else 0,
                },
                "errors": [
                    {"content_type": ct, "stage": stage, "error_type": et, "count": n}
                    for (ct, stage, et), n in sorted(self._errors.items())
                ],
            }


class Reporting:
    """Store-backed views for operators.

    Args:
        store: Record store shared with the pipeline.
        tracker: Job tracker (document lookups).
        metrics: Processing metrics of this process.
        stuck_after: Age after which a pending or processing document is reported stuck.
    """

    def __init__(
        self,
        store: Store,
        tracker: JobTracker,
        metrics: Optional[ProcessingMetrics] = None,
        stuck_after: timedelta = timedelta(days=1),
    ):
        self.store = store
        self.tracker = tracker
        self.metrics = metrics or ProcessingMetrics()
        self.stuck_after = stuck_after

    def _documents(self) -> List[Document]:
        return [Document.model_validate(r) for r in self.store.all("documents")]

    def list_documents(self, limit: int = 100, status: Optional[DocumentStatus] = None) -> List[Document]:
        """Documents newest first, optionally only those in one status."""
        if status is not None:
            documents = self.tracker.documents_by_status(status)
        else:
            documents = self._documents()
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents[:max(0, limit)]

    def document_chunks(self, document_id: str) -> Optional[List[Dict[str, Any]]]:
        """Stored chunks of a document in order, vectors replaced by an `embedded` flag.

        Returns None for an unknown document.
        """
        if self.tracker.get_document(document_id) is None:
            return None
        records = sorted(self.store.query_by_index("chunks", "document_id", document_id), key=lambda r: r["index"])
        chunks = []
        for record in records:
            embedding = record.pop("embedding", None)
            record["embedded"] = bool(embedding)
            chunks.append(record)
        return chunks

    def system_analytics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals, query statistics, most retrieved documents and a daily series."""
        now = now or utcnow()
        documents = self._documents()
        queries = self.store.all("queries")
        status_counts = Counter(d.status.value for d in documents)
        titles = {d.id: d.title for d in documents}

        top_queries: Dict[str, Dict[str, Any]] = {}
        document_hits: Counter = Counter()
        times = [q["response_time_ms"] for q in queries if q.get("response_time_ms") is not None]
        for q in queries:
            key = q.get("query_text", "").strip().lower()
            entry = top_queries.setdefault(key, {"query": key, "count": 0, "total_score": 0.0, "scored": 0})
            entry["count"] += 1
            if q.get("top_score") is not None:
                entry["total_score"] += q["top_score"]
                entry["scored"] += 1
            for document_id in {r["document_id"] for r in q.get("results", [])}:
                document_hits[document_id] += 1

        ranked_queries = sorted(top_queries.values(), key=lambda e: e["count"], reverse=True)[:TOP_N]
        series = self._time_series(documents, queries, now)
        return {
            "total_documents": len(documents),
            "documents_by_status": {s.value: status_counts.get(s.value, 0) for s in DocumentStatus},
            "total_chunks": len(self.store.all("chunks")),
            "storage_used_bytes": sum(d.size_bytes for d in documents),
            "total_queries": len(queries),
            "avg_query_ms": round(sum(times) / len(times)) if times else 0,
            "top_queries": [
                {
                    "query": e["query"],
                    "count": e["count"],
                    "avg_top_score": round(e["total_score"] / e["scored"], 4) if e["scored"] else None,
                }
                for e in ranked_queries
            ],
            "top_documents": [
                {"document_id": doc_id, "title": titles.get(doc_id), "query_count": n}
                for doc_id, n in document_hits.most_common(TOP_N)
            ],
            "time_series": series,
        }

    def _time_series(self, documents: List[Document], queries: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
        days = [(now - timedelta(days=offset)).date() for offset in range(TIME_SERIES_DAYS - 1, -1, -1)]
        uploads = Counter(d.created_at.date() for d in documents)
        asked = Counter()
        for q in queries:
            created = _parse_time(q.get("created_at"))
            if created is not None:
                asked[created.date()] += 1
        return [{"date": day.isoformat(), "uploads": uploads.get(day, 0), "queries": asked.get(day, 0)} for day in days]

    def diagnostics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Consistency checks: orphaned chunks, empty completed documents, stuck documents."""
        now = now or utcnow()
        documents = self._documents()
        by_id = {d.id: d for d in documents}
        chunks = self.store.all("chunks")

        chunks_per_document: Counter = Counter(c["document_id"] for c in chunks)
        orphaned = [c["id"] for c in chunks if c["document_id"] not in by_id]
        embedded = sum(1 for c in chunks if c.get("embedding"))
        without_chunks = [
            {"id": d.id, "title": d.title}
            for d in documents
            if d.status is DocumentStatus.COMPLETED and chunks_per_document.get(d.id, 0) == 0
        ]
        stuck = []
        for d in documents:
            if d.status not in (DocumentStatus.PENDING, DocumentStatus.PROCESSING):
                continue
            age = now - d.created_at
            if age > self.stuck_after:
                stuck.append({"id": d.id, "title": d.title, "status": d.status.value, "hours_stuck": int(age.total_seconds() // 3600)})

        issues = []
        if orphaned:
            issues.append(f"{len(orphaned)} chunk(s) reference missing documents")
        if without_chunks:
            issues.append(f"{len(without_chunks)} completed document(s) have no chunks")
        if stuck:
            issues.append(f"{len(stuck)} document(s) stuck in pending or processing")
        if chunks and embedded < len(chunks):
            issues.append(f"{len(chunks) - embedded} chunk(s) have no embedding")
        if issues:
            logger.warning("Diagnostics found %d issue(s): %s", len(issues), "; ".join(issues))

        recent = sorted(documents, key=lambda d: d.created_at, reverse=True)[:RECENT_DOCUMENTS]
        status_counts = Counter(d.status.value for d in documents)
        return {
            "summary": {
                "total_documents": len(documents),
                "total_chunks": len(chunks),
                "total_queries": len(self.store.all("queries")),
                "storage_used_bytes": sum(d.size_bytes for d in documents),
            },
            "document_statuses": {s.value: status_counts.get(s.value, 0) for s in DocumentStatus},
            "embedding_status": {
                "with_embedding": embedded,
                "without_embedding": len(chunks) - embedded,
                "coverage_percent": round(100.0 * embedded / len(chunks), 2) if chunks else 100.0,
            },
            "orphaned_chunks": orphaned,
            "documents_without_chunks": without_chunks,
            "stuck_documents": stuck,
            "recent_documents": [
                {"id": d.id, "title": d.title, "status": d.status.value, "chunk_count": d.chunk_count, "created_at": d.created_at.isoformat()}
                for d in recent
            ],
            "issues": issues,
        }
