"""Tests for document listing, analytics, diagnostics and processing metrics."""
from datetime import timedelta

import pytest

from docindex.reporting import ProcessingMetrics
from docindex.schemas import Document, DocumentStatus, utcnow

NOTES = b"Rotate the signing keys every month. Revoke leaked keys at once."
MANUAL = b"The backup job runs nightly and keeps thirty days of snapshots."


async def ingest(services, title, data, content_type="text/plain"):
    document = services.processor.register(title, data, content_type)
    await services.processor.process(document, data)
    return services.tracker.get_document(document.id)


class TestListing:
    @pytest.mark.asyncio
    async def test_documents_newest_first_and_by_status(self, services):
        """Should list newest first, honour the limit and filter by status."""
        first = await ingest(services, "Notes", NOTES)
        second = await ingest(services, "Manual", MANUAL)
        failed = await ingest(services, "Scan", b"%PDF-1.7", "application/pdf")

        reporting = services.reporting
        assert [d.id for d in reporting.list_documents()] == [failed.id, second.id, first.id]
        assert [d.id for d in reporting.list_documents(limit=1)] == [failed.id]
        completed = reporting.list_documents(status=DocumentStatus.COMPLETED)
        assert {d.id for d in completed} == {first.id, second.id}
        assert [d.id for d in reporting.list_documents(status=DocumentStatus.ERROR)] == [failed.id]

    @pytest.mark.asyncio
    async def test_document_chunks_in_order_without_vectors(self, services):
        """Should return chunks by index with an embedded flag instead of the vector."""
        document = await ingest(services, "Notes", NOTES)

        chunks = services.reporting.document_chunks(document.id)

        assert len(chunks) == document.chunk_count
        assert [c["index"] for c in chunks] == list(range(len(chunks)))
        assert all(c["embedded"] for c in chunks)
        assert all("embedding" not in c for c in chunks)
        assert services.reporting.document_chunks("missing") is None


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_totals_and_query_statistics(self, services):
        """Should count documents, storage and queries, and rank repeated queries."""
        notes = await ingest(services, "Notes", NOTES)
        await ingest(services, "Manual", MANUAL)
        await services.search.search("signing keys")
        await services.search.search("  Signing Keys ")
        await services.search.search("backup snapshots")

        report = services.reporting.system_analytics()

        assert report["total_documents"] == 2
        assert report["documents_by_status"]["completed"] == 2
        assert report["documents_by_status"]["error"] == 0
        assert report["storage_used_bytes"] == len(NOTES) + len(MANUAL)
        assert report["total_chunks"] == len(services.store.all("chunks"))
        assert report["total_queries"] == 3
        top = report["top_queries"][0]
        assert top["query"] == "signing keys"
        assert top["count"] == 2
        assert top["avg_top_score"] is not None
        hits = {d["document_id"]: d for d in report["top_documents"]}
        assert hits[notes.id]["query_count"] == 3
        assert hits[notes.id]["title"] == "Notes"

    @pytest.mark.asyncio
    async def test_time_series_covers_thirty_days(self, services):
        """Should report one entry per day ending today with today's uploads and queries."""
        await ingest(services, "Notes", NOTES)
        await services.search.search("signing keys")

        series = services.reporting.system_analytics()["time_series"]

        assert len(series) == 30
        assert series[-1]["date"] == utcnow().date().isoformat()
        assert series[-1]["uploads"] == 1
        assert series[-1]["queries"] == 1
        assert sum(day["uploads"] for day in series[:-1]) == 0

    def test_empty_store(self, services):
        """Should report zeros without dividing by zero."""
        report = services.reporting.system_analytics()
        assert report["total_documents"] == 0
        assert report["avg_query_ms"] == 0
        assert report["top_queries"] == []
        assert report["top_documents"] == []


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_healthy_store_has_no_issues(self, services):
        """Should report full embedding coverage and no issues after a clean ingest."""
        await ingest(services, "Notes", NOTES)

        report = services.reporting.diagnostics()

        assert report["issues"] == []
        assert report["embedding_status"]["coverage_percent"] == 100.0
        assert report["summary"]["total_documents"] == 1
        assert report["recent_documents"][0]["title"] == "Notes"

    @pytest.mark.asyncio
    async def test_detects_inconsistencies(self, services):
        """Should flag orphaned chunks, empty completed documents, stuck documents and missing vectors."""
        await ingest(services, "Blank", b"   ")
        services.store.put("chunks", "orphan", {"id": "orphan", "document_id": "gone", "index": 0, "content": "x"})
        stale = Document(id="stale", title="Stale", status=DocumentStatus.PROCESSING, created_at=utcnow() - timedelta(days=2))
        services.store.put("documents", stale.id, stale.model_dump(mode="json"))

        report = services.reporting.diagnostics()

        assert report["orphaned_chunks"] == ["orphan"]
        assert [d["title"] for d in report["documents_without_chunks"]] == ["Blank"]
        assert [d["id"] for d in report["stuck_documents"]] == ["stale"]
        assert report["stuck_documents"][0]["hours_stuck"] >= 47
        assert report["embedding_status"]["without_embedding"] == 1
        assert len(report["issues"]) == 4

    def test_recent_processing_is_not_stuck(self, services):
        """Should not flag a document that started processing within the threshold."""
        fresh = Document(id="fresh", title="Fresh", status=DocumentStatus.PROCESSING)
        services.store.put("documents", fresh.id, fresh.model_dump(mode="json"))
        assert services.reporting.diagnostics()["stuck_documents"] == []


class TestProcessingMetrics:
    @pytest.mark.asyncio
    async def test_processor_records_stages_and_outcomes(self, services):
        """Should time every stage and count completed and failed documents."""
        document = await ingest(services, "Notes", NOTES)
        await ingest(services, "Scan", b"%PDF-1.7", "application/pdf")

        snapshot = services.reporting.metrics.snapshot()

        assert set(snapshot["stage_durations"]) == {"extracting", "chunking", "embedding", "indexing"}
        assert snapshot["stage_durations"]["extracting"]["count"] == 1
        assert snapshot["embedding"]["chunks"] == document.chunk_count
        assert snapshot["chunks_per_document"]["count"] == 1
        assert {(d["content_type"], d["status"]) for d in snapshot["documents_processed"]} == {
            ("text/plain", "completed"),
            ("application/pdf", "error"),
        }
        assert snapshot["errors"] == [
            {"content_type": "application/pdf", "stage": "extracting", "error_type": "ExtractionError", "count": 1}
        ]

    def test_snapshot_of_fresh_metrics(self):
        """Should report empty counters and zero timings."""
        snapshot = ProcessingMetrics().snapshot()
        assert snapshot["documents_processed"] == []
        assert snapshot["embedding"]["count"] == 0
        assert snapshot["chunks_per_document"]["mean"] == 0.0
