"""Processing job state machine and progress reporting.

Stages move forward only:
    pending -> extracting -> chunking -> embedding -> indexing -> completed
and any non-terminal stage may fail into `error`. Terminal jobs are immutable.

Overall progress is a percentage; each stage owns a band and progress inside a
stage is mapped into it, so reported progress never decreases:
    extracting 0-10, chunking 10-30, embedding 30-90, indexing 90-100

The tracker is the only writer of Document.status / error_message /
chunk_count / processing_ms, and publishes a JobEvent for every change to
subscribed asyncio queues.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from docindex.errors import JobStateError
from docindex.schemas import (
    Document,
    DocumentStatus,
    JobEvent,
    JobStage,
    ProcessingJob,
    utcnow,
)
from docindex.store import Store
from docindex.utils import stable_id

logger = logging.getLogger(__name__)

STAGE_ORDER: List[JobStage] = [
    JobStage.PENDING,
    JobStage.EXTRACTING,
    JobStage.CHUNKING,
    JobStage.EMBEDDING,
    JobStage.INDEXING,
    JobStage.COMPLETED,
]

STAGE_BANDS: Dict[JobStage, Tuple[float, float]] = {
    JobStage.PENDING: (0.0, 0.0),
    JobStage.EXTRACTING: (0.0, 10.0),
    JobStage.CHUNKING: (10.0, 30.0),
    JobStage.EMBEDDING: (30.0, 90.0),
    JobStage.INDEXING: (90.0, 100.0),
    JobStage.COMPLETED: (100.0, 100.0),
}


class JobTracker:
    def __init__(self, store: Store):
        self.store = store
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._cancel_reasons: Dict[str, str] = {}
        self._subscribers: Dict[asyncio.Queue, Optional[str]] = {}

    # --- Documents ------------------------------------------------------------

    def save_document(self, document: Document) -> Document:
        document.updated_at = utcnow()
        self.store.put("documents", document.id, document.model_dump(mode="json"))
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        record = self.store.get("documents", document_id)
        return Document.model_validate(record) if record is not None else None

    def delete_document(self, document_id: str) -> bool:
        """Drop a document and its job history.

        Cancel events of running jobs are kept until the runner calls release(),
        so a job cancelled by the deletion still sees the signal.
        """
        for job in self.list_jobs(document_id):
            self.store.delete("jobs", job.id)
        return self.store.delete("documents", document_id)

    def _update_document(self, document_id: str, **changes) -> None:
        document = self.get_document(document_id)
        if document is None:
            return
        for key, value in changes.items():
            setattr(document, key, value)
        self.save_document(document)

    # --- Job records ----------------------------------------------------------

    def _save(self, job: ProcessingJob) -> None:
        # A job whose document was deleted is not written back.
        if self.store.get("documents", job.document_id) is None:
            return
        self.store.put("jobs", job.id, job.model_dump(mode="json"))

    def _publish(self, job: ProcessingJob) -> None:
        event = JobEvent(
            job_id=job.id,
            document_id=job.document_id,
            stage=job.stage,
            progress=job.progress,
            error=job.error,
        )
        for queue, document_id in list(self._subscribers.items()):
            if document_id is None or document_id == job.document_id:
                queue.put_nowait(event)

    def _ensure_mutable(self, job: ProcessingJob) -> None:
        """Reject changes to a job that is terminal in memory or in the store.

        Another process sharing the store may have finished the job; the
        caller's copy is synced to the stored terminal state before raising.
        """
        if not job.stage.is_terminal:
            record = self.store.get("jobs", job.id)
            if record is not None:
                stored = ProcessingJob.model_validate(record)
                if stored.stage.is_terminal:
                    job.stage = stored.stage
                    job.progress = stored.progress
                    job.error = stored.error
                    job.ended_at = stored.ended_at
        if job.stage.is_terminal:
            raise JobStateError(
                f"Job {job.id} is already {job.stage.value}",
                {"job_id": job.id, "document_id": job.document_id, "stage": job.stage.value},
            )

    def create(self, document_id: str) -> ProcessingJob:
        """Start a new job for a document.

        Raises:
            JobStateError: The document already has a non-terminal job.
        """
        latest = self.get_job(document_id)
        if latest is not None and not latest.stage.is_terminal:
            raise JobStateError(
                f"Document {document_id} already has an active job",
                {"job_id": latest.id, "stage": latest.stage.value},
            )
        attempt = latest.attempt + 1 if latest is not None else 1
        job = ProcessingJob(id=stable_id(document_id, "job", attempt), document_id=document_id, attempt=attempt)
        self._cancel_events[job.id] = asyncio.Event()
        self._save(job)
        self._update_document(document_id, status=DocumentStatus.PROCESSING, error_message=None)
        logger.info("Created job %s for document %s (attempt %d)", job.id, document_id, attempt)
        self._publish(job)
        return job

    def advance(self, job: ProcessingJob, stage: JobStage) -> ProcessingJob:
        """Move a job forward to `stage` (completed/error go through complete/fail)."""
        self._ensure_mutable(job)
        if stage.is_terminal:
            raise JobStateError(f"Use complete() or fail() to reach {stage.value}", {"job_id": job.id})
        if STAGE_ORDER.index(stage) <= STAGE_ORDER.index(job.stage):
            raise JobStateError(
                f"Cannot move job from {job.stage.value} to {stage.value}",
                {"job_id": job.id, "from": job.stage.value, "to": stage.value},
            )
        job.stage = stage
        job.progress = max(job.progress, STAGE_BANDS[stage][0])
        self._save(job)
        logger.info("Job %s -> %s", job.id, stage.value)
        self._publish(job)
        return job

    def report_progress(self, job: ProcessingJob, fraction: float) -> ProcessingJob:
        """Report completion of the current stage as a fraction in [0, 1]."""
        self._ensure_mutable(job)
        low, high = STAGE_BANDS[job.stage]
        fraction = min(1.0, max(0.0, float(fraction)))
        value = round(low + fraction * (high - low), 2)
        if value > job.progress:
            job.progress = value
            self._save(job)
            self._publish(job)
        return job

    def complete(self, job: ProcessingJob, chunk_count: int) -> ProcessingJob:
        self._ensure_mutable(job)
        job.stage = JobStage.COMPLETED
        job.progress = 100.0
        job.ended_at = utcnow()
        self._save(job)
        elapsed_ms = int((job.ended_at - job.started_at).total_seconds() * 1000)
        self._update_document(
            job.document_id,
            status=DocumentStatus.COMPLETED,
            error_message=None,
            chunk_count=chunk_count,
            processing_ms=elapsed_ms,
        )
        logger.info("Job %s completed: %d chunks in %dms", job.id, chunk_count, elapsed_ms)
        self._publish(job)
        return job

    def fail(self, job: ProcessingJob, error: BaseException | str) -> ProcessingJob:
        self._ensure_mutable(job)
        job.stage = JobStage.ERROR
        job.error = str(error)
        job.ended_at = utcnow()
        self._save(job)
        elapsed_ms = int((job.ended_at - job.started_at).total_seconds() * 1000)
        self._update_document(
            job.document_id,
            status=DocumentStatus.ERROR,
            error_message=job.error,
            processing_ms=elapsed_ms,
        )
        logger.warning("Job %s failed: %s", job.id, job.error)
        self._publish(job)
        return job

    # --- Queries --------------------------------------------------------------

    def list_jobs(self, document_id: str) -> List[ProcessingJob]:
        """All jobs of a document, oldest attempt first (the audit trail)."""
        jobs = [ProcessingJob.model_validate(r) for r in self.store.query_by_index("jobs", "document_id", document_id)]
        return sorted(jobs, key=lambda j: j.attempt)

    def get_job(self, document_id: str) -> Optional[ProcessingJob]:
        jobs = self.list_jobs(document_id)
        return jobs[-1] if jobs else None

    def active_jobs(self) -> List[ProcessingJob]:
        active: List[ProcessingJob] = []
        for stage in STAGE_ORDER:
            if stage.is_terminal:
                continue
            active.extend(ProcessingJob.model_validate(r) for r in self.store.query_by_index("jobs", "stage", stage.value))
        return sorted(active, key=lambda j: j.started_at)

    def recover_interrupted(self) -> List[ProcessingJob]:
        """Fail jobs left non-terminal by a previous process so their documents can be retried.

        Only the long-running API process calls this at startup; short-lived
        commands sharing the store must not touch jobs another process runs.
        """
        recovered = []
        for job in self.active_jobs():
            if self.get_document(job.document_id) is None:
                self.store.delete("jobs", job.id)
                continue
            self.fail(job, "Processing interrupted before completion")
            recovered.append(job)
        if recovered:
            logger.warning("Marked %d interrupted job(s) as failed", len(recovered))
        return recovered

    # --- Cancellation ---------------------------------------------------------

    def cancel_event(self, job: ProcessingJob) -> asyncio.Event:
        return self._cancel_events.setdefault(job.id, asyncio.Event())

    def cancel_reason(self, job: ProcessingJob) -> str:
        return self._cancel_reasons.get(job.id, "cancelled")

    def release(self, job: ProcessingJob) -> None:
        """Forget the cancel state of a job once its runner has finished."""
        self._cancel_events.pop(job.id, None)
        self._cancel_reasons.pop(job.id, None)

    def cancel(self, document_id: str, reason: str = "cancelled") -> bool:
        """Signal the active job of a document to stop at its next checkpoint."""
        job = self.get_job(document_id)
        if job is None or job.stage.is_terminal:
            return False
        self._cancel_reasons[job.id] = reason
        self.cancel_event(job).set()
        logger.info("Cancellation requested for job %s: %s", job.id, reason)
        return True

    # --- Subscriptions --------------------------------------------------------

    def subscribe(self, document_id: Optional[str] = None) -> asyncio.Queue:
        """Receive JobEvents (for one document, or all when None) in transition order."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[queue] = document_id
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.pop(queue, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def documents_by_status(self, status: DocumentStatus) -> List[Document]:
        return [Document.model_validate(r) for r in self.store.query_by_index("documents", "status", status.value)]
