"""Tests for the HTTP API."""
import pytest
from fastapi.testclient import TestClient

from docindex.cache import InMemoryEmbeddingCache
from docindex.errors import ProviderError
from docindex.main import create_app
from docindex.schemas import JobStage
from docindex.services import build_services
from docindex.store import InMemoryStore
from tests.conftest import FakeProvider, rate_limited

RUNBOOK = (
    "Rotate the signing keys every month. "
    "Old keys stay valid for one week after rotation. "
    "The on-call engineer announces each rotation in the operations channel. "
    "Lunch orders are collected on Thursday afternoon."
).encode()


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def upload(client, title="Runbook", data=RUNBOOK, **params):
    return client.post("/documents", params={"title": title, **params}, content=data)


class TestHealth:
    def test_health(self, client):
        """Should report ok and the number of indexed chunks."""
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "indexed_chunks": 0}


class TestDocuments:
    def test_upload_processes_in_background(self, client):
        """Should accept the upload and finish processing it."""
        resp = upload(client)
        assert resp.status_code == 202
        body = resp.json()
        document_id = body["document"]["id"]
        assert body["job"]["stage"] == "pending"
        assert body["job"]["attempt"] == 1

        job = client.get(f"/jobs/{document_id}").json()
        assert job["stage"] == "completed"
        assert job["progress"] == 100.0

        document = client.get(f"/documents/{document_id}").json()
        assert document["status"] == "completed"
        assert document["chunk_count"] >= 1
        assert document["content_type"] == "text/plain"
        assert client.get("/health").json()["indexed_chunks"] == document["chunk_count"]

        history = client.get(f"/jobs/{document_id}/history").json()
        assert [j["attempt"] for j in history] == [1]

    def test_content_type_from_query(self, client):
        """Should take the content type from the query parameter."""
        resp = upload(client, data=b"# Title\n\nSome body text here.", content_type="text/markdown")
        document_id = resp.json()["document"]["id"]
        assert client.get(f"/documents/{document_id}").json()["content_type"] == "text/markdown"

    def test_unsupported_type_ends_in_error(self, client):
        """Should record extraction failures on the job and document."""
        resp = upload(client, data=b"%PDF-1.7", content_type="application/pdf")
        document_id = resp.json()["document"]["id"]
        job = client.get(f"/jobs/{document_id}").json()
        assert job["stage"] == "error"
        assert "Unsupported content type" in job["error"]
        assert client.get(f"/documents/{document_id}").json()["status"] == "error"

    def test_bad_uploads_rejected(self, client):
        """Should reject empty bodies and missing titles."""
        assert upload(client, data=b"").status_code == 400
        assert client.post("/documents", content=b"text").status_code == 422

    def test_unknown_ids(self, client):
        """Should return 404 for unknown documents and jobs."""
        assert client.get("/documents/nope").status_code == 404
        assert client.get("/jobs/nope").status_code == 404
        assert client.get("/jobs/nope/history").status_code == 404
        assert client.delete("/documents/nope").status_code == 404

    def test_delete(self, client):
        """Should delete the document and drop its chunks from search."""
        document_id = upload(client).json()["document"]["id"]
        resp = client.delete(f"/documents/{document_id}")
        assert resp.status_code == 200
        assert resp.json() == {"deleted": document_id}
        assert client.get(f"/documents/{document_id}").status_code == 404
        assert client.get("/health").json()["indexed_chunks"] == 0


class TestRetry:
    def test_retry_failed_document(self, client, provider):
        """Should start and finish a second attempt after a failure."""
        provider.failures = [ProviderError("Bad Request", status=400)]
        document_id = upload(client).json()["document"]["id"]
        assert client.get(f"/jobs/{document_id}").json()["stage"] == "error"

        resp = client.post(f"/documents/{document_id}/retry", content=RUNBOOK)
        assert resp.status_code == 202
        assert resp.json()["job"]["attempt"] == 2
        assert client.get(f"/jobs/{document_id}").json()["stage"] == "completed"
        history = client.get(f"/jobs/{document_id}/history").json()
        assert [j["stage"] for j in history] == ["error", "completed"]

    def test_retry_conflicts(self, client):
        """Should refuse retries of completed or unknown documents."""
        document_id = upload(client).json()["document"]["id"]
        resp = client.post(f"/documents/{document_id}/retry", content=RUNBOOK)
        assert resp.status_code == 409
        assert resp.json()["error"] == "JobStateError"
        assert client.post("/documents/nope/retry", content=RUNBOOK).status_code == 409
        assert client.post(f"/documents/{document_id}/retry", content=b"").status_code == 400


class TestSearch:
    def test_search_and_query_log(self, client):
        """Should return ranked results with titles and log the query."""
        upload(client)
        resp = client.post("/search", json={"query": "rotate signing keys", "k": 3})
        assert resp.status_code == 200
        body = resp.json()
        assert body["alpha"] == 0.7
        assert 1 <= len(body["results"]) <= 3
        assert body["results"][0]["document_title"] == "Runbook"
        assert body["latency_ms"] >= 0

        client.post("/search", json={"query": "lunch", "alpha": 0.2})
        log = client.get("/queries", params={"limit": 1}).json()
        assert [q["query_text"] for q in log] == ["lunch"]
        assert len(client.get("/queries").json()) == 2

    def test_filters(self, client):
        """Should restrict results to the requested documents."""
        upload(client)
        resp = client.post("/search", json={"query": "keys", "document_ids": ["other"]})
        assert resp.status_code == 200
        assert resp.json()["results"] == []

    @pytest.mark.parametrize("payload", [{"query": "   "}, {"query": "keys", "alpha": 1.5}])
    def test_invalid_queries(self, client, payload):
        """Should answer 400 for blank queries and out-of-range alpha."""
        resp = client.post("/search", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidQueryError"

    def test_schema_validation(self, client):
        """Should answer 422 for malformed payloads."""
        assert client.post("/search", json={"query": "keys", "k": 0}).status_code == 422
        assert client.post("/search", json={}).status_code == 422
        assert client.get("/queries", params={"limit": 0}).status_code == 422

    def test_provider_outage_is_503(self, test_settings):
        """Should answer 503 with Retry-After when the provider is unavailable."""
        provider = FakeProvider(failures=[rate_limited(retry_after=2.5)])
        services = build_services(
            settings=test_settings.model_copy(update={"RETRY_MAX_ATTEMPTS": 1}),
            store=InMemoryStore(),
            provider=provider,
            cache=InMemoryEmbeddingCache(),
        )
        with TestClient(create_app(services)) as client:
            resp = client.post("/search", json={"query": "keys"})
        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "3"
        assert resp.json()["error"] == "ProviderError"


class TestStartup:
    def test_startup_fails_interrupted_jobs(self, services):
        """Should fail jobs a previous server left running so they can be retried."""
        document = services.processor.register("Runbook", RUNBOOK)
        job = services.tracker.create(document.id)
        services.tracker.advance(job, JobStage.EMBEDDING)

        with TestClient(create_app(services)) as client:
            body = client.get(f"/jobs/{document.id}").json()
            assert body["stage"] == "error"
            assert "interrupted" in body["error"]
            assert client.get(f"/documents/{document.id}").json()["status"] == "error"
            assert client.post(f"/documents/{document.id}/retry", content=RUNBOOK).status_code == 202

    def test_building_services_leaves_live_jobs_alone(self, services, test_settings, provider):
        """Should not fail jobs of another process when a command builds services on the same store."""
        document = services.processor.register("Runbook", RUNBOOK)
        job = services.tracker.create(document.id)
        services.tracker.advance(job, JobStage.EMBEDDING)

        other = build_services(
            settings=test_settings,
            store=services.store,
            provider=provider,
            cache=InMemoryEmbeddingCache(),
        )

        assert other.tracker.get_job(document.id).stage is JobStage.EMBEDDING
        services.tracker.advance(job, JobStage.INDEXING)
        assert services.tracker.complete(job, 1).stage is JobStage.COMPLETED


class TestReporting:
    def test_list_documents(self, client):
        """Should list documents newest first and filter by status."""
        first = upload(client, title="First").json()["document"]["id"]
        second = upload(client, title="Second").json()["document"]["id"]
        failed = upload(client, title="Scan", content_type="application/pdf").json()["document"]["id"]

        listed = client.get("/documents").json()
        assert [d["id"] for d in listed] == [failed, second, first]
        assert [d["id"] for d in client.get("/documents", params={"limit": 1}).json()] == [failed]
        completed = client.get("/documents", params={"status": "completed"}).json()
        assert {d["id"] for d in completed} == {first, second}
        assert client.get("/documents", params={"status": "bogus"}).status_code == 422

    def test_document_chunks(self, client):
        """Should return ordered chunks without vectors, and 404 for unknown documents."""
        document_id = upload(client).json()["document"]["id"]

        chunks = client.get(f"/documents/{document_id}/chunks").json()
        assert [c["index"] for c in chunks] == list(range(len(chunks)))
        assert all(c["embedded"] and "embedding" not in c for c in chunks)
        assert client.get("/documents/missing/chunks").status_code == 404

    def test_analytics_diagnostics_and_metrics(self, client):
        """Should summarise documents and queries, report no issues, and expose stage timings."""
        upload(client)
        client.post("/search", json={"query": "signing keys"})

        analytics = client.get("/analytics").json()
        assert analytics["total_documents"] == 1
        assert analytics["total_queries"] == 1
        assert analytics["top_queries"][0]["query"] == "signing keys"
        assert len(analytics["time_series"]) == 30

        diagnostics = client.get("/diagnostics").json()
        assert diagnostics["issues"] == []
        assert diagnostics["embedding_status"]["coverage_percent"] == 100.0

        metrics = client.get("/metrics").json()
        assert metrics["stage_durations"]["embedding"]["count"] == 1
        assert metrics["documents_processed"] == [{"content_type": "text/plain", "status": "completed", "count": 1}]
