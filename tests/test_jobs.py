"""Tests for the processing job state machine."""
import pytest

from docindex.errors import JobStateError
from docindex.jobs import JobTracker
from docindex.schemas import Document, DocumentStatus, JobStage
from docindex.store import InMemoryStore


@pytest.fixture
def tracker() -> JobTracker:
    t = JobTracker(InMemoryStore())
    t.save_document(Document(id="doc-1", title="Guide"))
    t.save_document(Document(id="doc-2", title="Notes"))
    return t


class TestTransitions:
    def test_create_starts_pending_attempt(self, tracker):
        """Should create a pending first attempt and mark the document processing."""
        job = tracker.create("doc-1")
        assert job.stage is JobStage.PENDING
        assert job.attempt == 1
        assert job.progress == 0.0
        assert tracker.get_document("doc-1").status is DocumentStatus.PROCESSING

    def test_one_active_job_per_document(self, tracker):
        """Should refuse a second job while one is still running."""
        tracker.create("doc-1")
        with pytest.raises(JobStateError):
            tracker.create("doc-1")

    def test_stages_only_move_forward(self, tracker):
        """Should reject moving back to an earlier stage."""
        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EXTRACTING)
        tracker.advance(job, JobStage.CHUNKING)
        with pytest.raises(JobStateError):
            tracker.advance(job, JobStage.EXTRACTING)
        with pytest.raises(JobStateError):
            tracker.advance(job, JobStage.CHUNKING)

    def test_terminal_stages_need_complete_or_fail(self, tracker):
        """Should not let advance() reach completed or error."""
        job = tracker.create("doc-1")
        with pytest.raises(JobStateError):
            tracker.advance(job, JobStage.COMPLETED)

    def test_complete_updates_document(self, tracker):
        """Should finish at 100% and record the chunk count on the document."""
        job = tracker.create("doc-1")
        for stage in (JobStage.EXTRACTING, JobStage.CHUNKING, JobStage.EMBEDDING, JobStage.INDEXING):
            tracker.advance(job, stage)
        tracker.complete(job, chunk_count=12)

        assert job.stage is JobStage.COMPLETED
        assert job.progress == 100.0
        assert job.ended_at is not None
        document = tracker.get_document("doc-1")
        assert document.status is DocumentStatus.COMPLETED
        assert document.chunk_count == 12
        assert document.processing_ms is not None

    def test_terminal_jobs_are_immutable(self, tracker):
        """Should reject any change to a completed or failed job."""
        job = tracker.create("doc-1")
        tracker.fail(job, "boom")
        with pytest.raises(JobStateError):
            tracker.advance(job, JobStage.EXTRACTING)
        with pytest.raises(JobStateError):
            tracker.complete(job, 1)
        with pytest.raises(JobStateError):
            tracker.report_progress(job, 0.5)

    def test_failure_recorded_and_retry_increments_attempt(self, tracker):
        """Should keep the failed attempt in history and number the retry."""
        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EXTRACTING)
        tracker.fail(job, ValueError("unreadable"))

        document = tracker.get_document("doc-1")
        assert document.status is DocumentStatus.ERROR
        assert document.error_message == "unreadable"

        retry = tracker.create("doc-1")
        assert retry.attempt == 2
        assert retry.id != job.id
        history = tracker.list_jobs("doc-1")
        assert [j.attempt for j in history] == [1, 2]
        assert history[0].stage is JobStage.ERROR
        assert tracker.get_job("doc-1").id == retry.id


class TestProgress:
    def test_progress_mapped_into_stage_band(self, tracker):
        """Should map stage-local fractions onto the overall percentage."""
        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EXTRACTING)
        tracker.report_progress(job, 1.0)
        assert job.progress == 10.0
        tracker.advance(job, JobStage.CHUNKING)
        tracker.advance(job, JobStage.EMBEDDING)
        assert job.progress == 30.0
        tracker.report_progress(job, 0.5)
        assert job.progress == 60.0

    def test_progress_never_decreases(self, tracker):
        """Should ignore progress reports lower than what was already reported."""
        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EMBEDDING)
        tracker.report_progress(job, 0.8)
        tracker.report_progress(job, 0.2)
        assert job.progress == 78.0
        assert tracker.get_job("doc-1").progress == 78.0


class TestEventsAndCancellation:
    def test_subscribers_receive_transitions_in_order(self, tracker):
        """Should publish one event per change, filtered by document."""
        mine = tracker.subscribe("doc-1")
        everything = tracker.subscribe()
        other = tracker.subscribe("doc-2")

        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EXTRACTING)
        tracker.fail(job, "bad bytes")

        stages = []
        while not mine.empty():
            stages.append(mine.get_nowait().stage)
        assert stages == [JobStage.PENDING, JobStage.EXTRACTING, JobStage.ERROR]
        assert everything.qsize() == 3
        assert other.empty()

        tracker.unsubscribe(mine)
        tracker.unsubscribe(everything)
        tracker.unsubscribe(other)
        assert tracker.subscriber_count == 0

    def test_cancel_sets_event_for_active_job(self, tracker):
        """Should signal the running job and remember the reason."""
        job = tracker.create("doc-1")
        assert tracker.cancel("doc-1", "user request")
        assert tracker.cancel_event(job).is_set()
        assert tracker.cancel_reason(job) == "user request"

    def test_cancel_without_active_job(self, tracker):
        """Should report nothing to cancel for idle documents."""
        assert not tracker.cancel("doc-2")
        job = tracker.create("doc-2")
        tracker.fail(job, "x")
        assert not tracker.cancel("doc-2")

    def test_recover_interrupted_fails_active_jobs(self, tracker):
        """Should fail jobs a previous process left running."""
        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EMBEDDING)
        restarted = JobTracker(tracker.store)
        recovered = restarted.recover_interrupted()

        assert [j.id for j in recovered] == [job.id]
        assert restarted.get_job("doc-1").stage is JobStage.ERROR
        assert restarted.get_document("doc-1").status is DocumentStatus.ERROR
        assert restarted.active_jobs() == []

    def test_delete_document_removes_jobs(self, tracker):
        """Should drop the document and its job history."""
        job = tracker.create("doc-1")
        tracker.complete(job, 0)
        assert tracker.delete_document("doc-1")
        assert tracker.get_document("doc-1") is None
        assert tracker.list_jobs("doc-1") == []
        assert tracker.documents_by_status(DocumentStatus.PENDING)[0].id == "doc-2"

    def test_job_failed_by_another_tracker_cannot_advance(self, tracker):
        """Should reject changes to a job another process already failed and sync the local copy."""
        job = tracker.create("doc-1")
        tracker.advance(job, JobStage.EMBEDDING)
        JobTracker(tracker.store).recover_interrupted()

        with pytest.raises(JobStateError):
            tracker.advance(job, JobStage.INDEXING)
        with pytest.raises(JobStateError):
            tracker.complete(job, 3)

        assert job.stage is JobStage.ERROR
        assert "interrupted" in job.error
        assert tracker.get_job("doc-1").stage is JobStage.ERROR
        assert tracker.get_document("doc-1").status is DocumentStatus.ERROR

    def test_recover_drops_jobs_of_deleted_documents(self, tracker):
        """Should delete active job records whose document no longer exists."""
        job = tracker.create("doc-1")
        tracker.store.delete("documents", "doc-1")

        assert JobTracker(tracker.store).recover_interrupted() == []
        assert tracker.store.get("jobs", job.id) is None

    def test_release_forgets_cancel_state(self, tracker):
        """Should keep the cancel signal across deletion until the runner releases it."""
        job = tracker.create("doc-1")
        tracker.cancel("doc-1", "document deleted")
        tracker.delete_document("doc-1")
        assert tracker.cancel_event(job).is_set()
        assert tracker.cancel_reason(job) == "document deleted"

        tracker.release(job)
        assert not tracker.cancel_event(job).is_set()
        assert tracker.cancel_reason(job) == "cancelled"

    def test_writes_for_deleted_documents_are_dropped(self, tracker):
        """Should not write job records back once the document is gone."""
        job = tracker.create("doc-1")
        tracker.delete_document("doc-1")
        tracker.advance(job, JobStage.EXTRACTING)
        tracker.fail(job, "stopped")
        assert tracker.list_jobs("doc-1") == []
        assert tracker.get_document("doc-1") is None
