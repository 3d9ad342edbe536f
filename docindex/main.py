"""FastAPI application entrypoint and routes.

Exposes health, document ingestion and listing, job status, hybrid search,
query log, analytics, diagnostics and processing metrics endpoints.
Configures CORS and builds the pipeline services at startup.
Document processing runs as a background task after the upload response.
"""
import logging
import math
from typing import Optional

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docindex.errors import (
    CircuitOpenError,
    DocIndexError,
    EmbeddingError,
    InvalidQueryError,
    JobStateError,
    ProviderError,
    RateLimitExceeded,
)
from docindex.obs import configure_logging
from docindex.schemas import DocumentStatus, SearchFilters, SearchRequest, SearchResponse
from docindex.services import Services, build_services

logger = logging.getLogger(__name__)

UNAVAILABLE = (ProviderError, EmbeddingError, CircuitOpenError, RateLimitExceeded)


def _error_body(exc: DocIndexError) -> dict:
    return {"error": type(exc).__name__, "message": exc.message, "details": exc.details}


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around a Services bundle (built from settings on startup when None)."""
    app = FastAPI(title="docindex", version="0.1.0")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_credentials=True,
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def on_startup() -> None:
        """Configure logging, build services unless injected, and fail jobs a previous server left running."""
        configure_logging()
        if app.state.services is None:
            app.state.services = build_services()
        app.state.services.tracker.recover_interrupted()

    def get_services(request: Request) -> Services:
        return request.app.state.services

    # --- Error mapping --------------------------------------------------------

    @app.exception_handler(InvalidQueryError)
    async def invalid_query(request: Request, exc: InvalidQueryError):
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(JobStateError)
    async def job_state(request: Request, exc: JobStateError):
        return JSONResponse(status_code=409, content=_error_body(exc))

    @app.exception_handler(DocIndexError)
    async def pipeline_error(request: Request, exc: DocIndexError):
        if isinstance(exc, UNAVAILABLE):
            headers = {}
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None:
                headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
            return JSONResponse(status_code=503, content=_error_body(exc), headers=headers)
        logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=500, content=_error_body(exc))

    # --- Routes ---------------------------------------------------------------

    @app.get("/health")
    def health():
        """Liveness probe endpoint.

        Returns:
            dict: {"status": "ok"} plus the number of indexed chunks.
        """
        services = app.state.services
        return {"status": "ok", "indexed_chunks": len(services.index) if services else 0}

    @app.post("/documents", status_code=202)
    async def upload_document(
        request: Request,
        background: BackgroundTasks,
        title: str = Query(..., min_length=1),
        content_type: Optional[str] = Query(default=None),
    ):
        """Register a document from the raw request body and schedule its processing.

        Args:
            title: Display title.
            content_type: MIME type; defaults to the request Content-Type header.

        Returns:
            dict: The pending document and its job.
        """
        services = get_services(request)
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Document body must not be empty")
        ctype = content_type or request.headers.get("content-type") or "text/plain"
        document = services.processor.register(title, data, ctype)
        job = services.tracker.create(document.id)
        background.add_task(services.processor.run_job, job, document, data)
        return {"document": document.model_dump(mode="json"), "job": job.model_dump(mode="json")}

    @app.get("/documents")
    def list_documents(
        request: Request,
        limit: int = Query(default=100, ge=1, le=1000),
        status: Optional[DocumentStatus] = Query(default=None),
    ):
        documents = get_services(request).reporting.list_documents(limit=limit, status=status)
        return [d.model_dump(mode="json") for d in documents]

    @app.get("/documents/{document_id}")
    def get_document(document_id: str, request: Request):
        document = get_services(request).tracker.get_document(document_id)
        if document is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return document.model_dump(mode="json")

    @app.get("/documents/{document_id}/chunks")
    def document_chunks(document_id: str, request: Request):
        chunks = get_services(request).reporting.document_chunks(document_id)
        if chunks is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return chunks

    @app.delete("/documents/{document_id}")
    def delete_document(document_id: str, request: Request):
        if not get_services(request).processor.delete(document_id):
            raise HTTPException(status_code=404, detail="Document not found")
        return {"deleted": document_id}

    @app.post("/documents/{document_id}/retry", status_code=202)
    async def retry_document(document_id: str, request: Request, background: BackgroundTasks):
        """Start a new attempt for a failed document; the raw body is re-submitted content."""
        services = get_services(request)
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Document body must not be empty")
        document, job = services.processor.start_retry(document_id)
        background.add_task(services.processor.run_job, job, document, data)
        return {"document": document.model_dump(mode="json"), "job": job.model_dump(mode="json")}

    @app.get("/jobs/{document_id}")
    def job_status(document_id: str, request: Request):
        job = get_services(request).tracker.get_job(document_id)
        if job is None:
            raise HTTPException(status_code=404, detail="No job for document")
        return job.model_dump(mode="json")

    @app.get("/jobs/{document_id}/history")
    def job_history(document_id: str, request: Request):
        jobs = get_services(request).tracker.list_jobs(document_id)
        if not jobs:
            raise HTTPException(status_code=404, detail="No job for document")
        return [j.model_dump(mode="json") for j in jobs]

    @app.post("/search", response_model=SearchResponse)
    async def search(request: Request, req: SearchRequest = Body(...)) -> SearchResponse:
        """Hybrid search over indexed chunks.

        Args:
            req: SearchRequest payload.

        Returns:
            SearchResponse: Ranked results, latency and the alpha used.
        """
        filters = None
        if req.document_ids or req.kinds:
            filters = SearchFilters(document_ids=req.document_ids, kinds=req.kinds)
        return await get_services(request).search.search(req.query, k=req.k, alpha=req.alpha, filters=filters)

    @app.get("/queries")
    def recent_queries(request: Request, limit: int = Query(default=20, ge=1, le=500)):
        return get_services(request).search.recent_queries(limit)

    @app.get("/analytics")
    def analytics(request: Request):
        """Document, chunk and query totals, top queries and documents, and a 30-day series."""
        return get_services(request).reporting.system_analytics()

    @app.get("/diagnostics")
    def diagnostics(request: Request):
        """Orphaned chunks, completed documents without chunks, stuck documents and embedding coverage."""
        return get_services(request).reporting.diagnostics()

    @app.get("/metrics")
    def metrics(request: Request):
        return get_services(request).reporting.metrics.snapshot()

    return app


app = create_app()
