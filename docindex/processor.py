"""Document processing: extract -> chunk -> embed -> index, tracked as a job.

Provides:
- Extractor: protocol for content extractors (sync or async `extract`).
- DocumentProcessor: registers documents and runs them through the pipeline
  stages, recording every outcome through the JobTracker.

Per-document failures never escape `process`; they end the job in `error`
with the failure message on the job and the document.
"""
import asyncio
import inspect
import logging
import time
from contextlib import contextmanager
from typing import Iterable, List, Optional, Protocol, Tuple

from docindex.chunking import ChunkingOptions, chunk, validate_options
from docindex.embedding_pipeline import EmbeddingPipeline
from docindex.errors import (
    DocIndexError,
    ExtractionError,
    JobCancelledError,
    JobStateError,
    PartialEmbeddingFailure,
)
from docindex.index import VectorKeywordIndex
from docindex.jobs import JobTracker
from docindex.obs import span
from docindex.reporting import ProcessingMetrics
from docindex.schemas import Chunk, Document, ExtractedContent, JobStage, ProcessingJob
from docindex.store import Store
from docindex.utils import new_id

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    def extract(self, data: bytes, content_type: str, document_id: Optional[str] = None) -> ExtractedContent:
        ...


class DocumentProcessor:
    """Runs documents through the indexing pipeline.

    Args:
        store: Record store for documents, jobs and chunks.
        tracker: Job state machine (sole writer of document status).
        extractor: Content extractor.
        pipeline: Embedding pipeline.
        index: Search index updated on completion.
        chunking_options: Token budget; validated here.
        extract_timeout: Seconds allowed for one extraction.
        max_concurrent_documents: Bound for process_many.
        metrics: Counters and stage timings (a fresh one when None).
    """

    def __init__(
        self,
        store: Store,
        tracker: JobTracker,
        extractor: Extractor,
        pipeline: EmbeddingPipeline,
        index: VectorKeywordIndex,
        chunking_options: Optional[ChunkingOptions] = None,
        extract_timeout: float = 120.0,
        max_concurrent_documents: int = 4,
        metrics: Optional[ProcessingMetrics] = None,
    ):
        self.options = chunking_options or ChunkingOptions()
        validate_options(self.options)
        self.store = store
        self.tracker = tracker
        self.extractor = extractor
        self.pipeline = pipeline
        self.index = index
        self.extract_timeout = extract_timeout
        self.max_concurrent_documents = max(1, int(max_concurrent_documents))
        self.metrics = metrics or ProcessingMetrics()

    def register(self, title: str, data: bytes, content_type: str = "text/plain", document_id: Optional[str] = None) -> Document:
        """Store a new pending document."""
        document = Document(
            id=document_id or new_id(),
            title=title,
            size_bytes=len(data),
            content_type=content_type,
        )
        self.tracker.save_document(document)
        logger.info("Registered document %s (%s, %d bytes)", document.id, content_type, len(data))
        return document

    # --- Stages ---------------------------------------------------------------

    def _checkpoint(self, job: ProcessingJob) -> None:
        if self.tracker.cancel_event(job).is_set():
            raise JobCancelledError(job.document_id, self.tracker.cancel_reason(job))

    async def _extract(self, document: Document, data: bytes) -> ExtractedContent:
        extract = self.extractor.extract
        if inspect.iscoroutinefunction(extract):
            work = extract(data, document.content_type, document.id)
        else:
            work = asyncio.to_thread(extract, data, document.content_type, document.id)
        try:
            with span("extract", {"document_id": document.id, "content_type": document.content_type}):
                return await asyncio.wait_for(work, timeout=self.extract_timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionError(
                f"Extraction timed out after {self.extract_timeout}s",
                document_id=document.id,
                content_type=document.content_type,
            ) from e
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(
                f"Extractor failed: {e}", document_id=document.id, content_type=document.content_type
            ) from e

    async def _embed(self, job: ProcessingJob, chunks: List[Chunk]) -> None:
        if not chunks:
            return
        cancel = self.tracker.cancel_event(job)

        def on_progress(done: int, total: int) -> None:
            if job.stage.is_terminal:
                return
            try:
                self.tracker.report_progress(job, done / total)
            except JobStateError:
                # Finished elsewhere; stop dispatching the remaining batches.
                cancel.set()

        try:
            t0 = time.perf_counter()
            await self.pipeline.embed(chunks, cancel_event=cancel, on_progress=on_progress)
            self.metrics.observe_embedding(len(chunks), time.perf_counter() - t0)
        except PartialEmbeddingFailure as e:
            if cancel.is_set():
                raise JobCancelledError(job.document_id, self.tracker.cancel_reason(job)) from e
            raise

    def _persist_and_index(self, job: ProcessingJob, document_id: str, chunks: List[Chunk]) -> None:
        if self.tracker.get_document(document_id) is None:
            raise JobCancelledError(document_id, "document deleted")
        with span("index", {"document_id": document_id, "chunks": len(chunks)}):
            for record in self.store.query_by_index("chunks", "document_id", document_id):
                self.store.delete("chunks", record["id"])
            for i, c in enumerate(chunks, start=1):
                self.store.put("chunks", c.id, c.model_dump(mode="json"))
                if i % 50 == 0:
                    self.tracker.report_progress(job, 0.9 * i / len(chunks))
            self.index.replace_document(document_id, chunks)

    @contextmanager
    def _timed(self, stage: JobStage):
        t0 = time.perf_counter()
        yield
        self.metrics.observe_stage(stage.value, time.perf_counter() - t0)

    async def run_job(self, job: ProcessingJob, document: Document, data: bytes) -> ProcessingJob:
        """Drive an already created job through every stage; never raises for document failures."""
        try:
            self._checkpoint(job)
            self.tracker.advance(job, JobStage.EXTRACTING)
            with self._timed(JobStage.EXTRACTING):
                content = await self._extract(document, data)
            self.tracker.report_progress(job, 1.0)

            self._checkpoint(job)
            self.tracker.advance(job, JobStage.CHUNKING)
            with self._timed(JobStage.CHUNKING), span("chunk", {"document_id": document.id}):
                chunks = chunk(content, self.options, document_id=document.id)
            self.tracker.report_progress(job, 1.0)

            self._checkpoint(job)
            self.tracker.advance(job, JobStage.EMBEDDING)
            with self._timed(JobStage.EMBEDDING):
                await self._embed(job, chunks)
            self.tracker.report_progress(job, 1.0)

            self._checkpoint(job)
            self.tracker.advance(job, JobStage.INDEXING)
            with self._timed(JobStage.INDEXING):
                self._persist_and_index(job, document.id, chunks)
            self.tracker.complete(job, len(chunks))
            self.metrics.document_processed(document.content_type, JobStage.COMPLETED.value, len(chunks))
        except DocIndexError as e:
            self._record_failure(job, document, e)
        except Exception as e:
            logger.exception("Unexpected failure processing document %s", document.id)
            self._record_failure(job, document, e)
        finally:
            self.tracker.release(job)
        return job

    def _record_failure(self, job: ProcessingJob, document: Document, error: BaseException) -> None:
        if job.stage.is_terminal:
            logger.warning("Job %s already %s; not recording: %s", job.id, job.stage.value, error)
            return
        self.metrics.processing_error(document.content_type, job.stage.value, type(error).__name__)
        try:
            self.tracker.fail(job, error)
        except JobStateError as e:
            logger.warning("Job %s finished elsewhere; not recording %s: %s", job.id, error, e)
            return
        self.metrics.document_processed(document.content_type, JobStage.ERROR.value)


    # --- Public API -----------------------------------------------------------

    async def process(self, document: Document, data: bytes) -> ProcessingJob:
        """Run one document through all stages.

        Returns:
            ProcessingJob: The finished job, in state completed or error.

        Raises:
            JobStateError: The document already has an active job.
        """
        job = self.tracker.create(document.id)
        return await self.run_job(job, document, data)

    async def process_many(self, items: Iterable[Tuple[Document, bytes]]) -> List[ProcessingJob]:
        """Process several documents concurrently, at most max_concurrent_documents at a time."""
        slots = asyncio.Semaphore(self.max_concurrent_documents)

        async def run(document: Document, data: bytes) -> ProcessingJob:
            async with slots:
                return await self.process(document, data)

        return list(await asyncio.gather(*(run(d, b) for d, b in items)))

    async def retry(self, document_id: str, data: bytes) -> ProcessingJob:
        """Start a new attempt for a document whose last job failed.

        Raises:
            JobStateError: Unknown document, or its last job did not fail.
        """
        document, job = self.start_retry(document_id)
        return await self.run_job(job, document, data)

    def start_retry(self, document_id: str) -> Tuple[Document, ProcessingJob]:
        """Validate a retry and create its job (attempt + 1) without running it."""
        document = self.tracker.get_document(document_id)
        if document is None:
            raise JobStateError(f"Unknown document {document_id}", {"document_id": document_id})
        latest = self.tracker.get_job(document_id)
        if latest is None or latest.stage is not JobStage.ERROR:
            raise JobStateError(
                f"Document {document_id} has no failed job to retry",
                {"document_id": document_id, "stage": latest.stage.value if latest else None},
            )
        return document, self.tracker.create(document_id)

    def delete(self, document_id: str) -> bool:
        """Cancel any active job and remove the document, its chunks and index entries."""
        self.tracker.cancel(document_id, "document deleted")
        removed = self.index.remove_document(document_id)
        for record in self.store.query_by_index("chunks", "document_id", document_id):
            self.store.delete("chunks", record["id"])
        existed = self.tracker.delete_document(document_id)
        logger.info("Deleted document %s (%d index entries)", document_id, removed)
        return existed
