"""
Unit tests for the in-memory JobStore.
"""

import uuid

from main import Job, JobStatus, JobStore


class TestJobStore:
    """Tests for JobStore class."""

    @staticmethod
    def test_create_job_starts_in_starting(store: JobStore) -> None:
        """A new job is tracked immediately with status 'starting'."""
        job_id = store.create_job(url="https://example.com/video", quality="best")

        job = store.get_status(job_id)
        assert job is not None
        assert job.id == job_id
        assert job.status == JobStatus.starting
        assert job.progress is None
        assert job.error is None
        assert job.url == "https://example.com/video"
        assert job_id in store

    @staticmethod
    def test_create_job_ids_are_unique(store: JobStore) -> None:
        ids = {store.create_job() for _ in range(200)}
        assert len(ids) == 200
        assert len(store) == 200

    @staticmethod
    def test_get_status_not_found(store: JobStore) -> None:
        assert store.get_status(str(uuid.uuid4())) is None

    @staticmethod
    def test_get_status_is_idempotent(store: JobStore) -> None:
        job_id = store.create_job()
        store.set_status(job_id, status=JobStatus.downloading, progress=12.5)

        first = store.get_status(job_id)
        second = store.get_status(job_id)
        assert first == second
        assert first is not None and first.public_view() == {"status": "downloading", "progress": 12.5}

    @staticmethod
    def test_set_status_merges_fields(store: JobStore) -> None:
        job_id = store.create_job(url="https://example.com/video")
        store.set_status(job_id, status=JobStatus.downloading, progress=10.0)
        store.set_status(job_id, progress=55.0)

        job = store.get_status(job_id)
        assert job is not None
        assert job.status == JobStatus.downloading
        assert job.progress == 55.0
        assert job.url == "https://example.com/video"

    @staticmethod
    def test_set_status_accepts_plain_strings(store: JobStore) -> None:
        job_id = store.create_job()
        job = store.set_status(job_id, status="downloading", progress=1)
        assert job.status is JobStatus.downloading
        assert job.progress == 1.0

    @staticmethod
    def test_set_status_creates_missing_record(store: JobStore) -> None:
        job = store.set_status("external-id", status=JobStatus.downloading, progress=3.0)

        assert job.id == "external-id"
        assert store.get_status("external-id") == job

    @staticmethod
    def test_terminal_job_is_immutable(store: JobStore) -> None:
        """No transition leaves 'completed' or 'error'."""
        job_id = store.create_job()
        store.set_status(job_id, status=JobStatus.error, error="unsupported format")

        result = store.set_status(job_id, status=JobStatus.downloading, progress=50.0)

        assert result.status == JobStatus.error
        assert store.get_status(job_id) == result
        assert result.public_view() == {"status": "error", "error": "unsupported format"}

    @staticmethod
    def test_delete_status(store: JobStore) -> None:
        job_id = store.create_job()

        deleted = store.delete_status(job_id)

        assert isinstance(deleted, Job)
        assert store.get_status(job_id) is None
        assert store.delete_status(job_id) is None

    @staticmethod
    def test_claim_completed_only_once(store: JobStore) -> None:
        job_id = store.create_job()
        store.set_status(job_id, status=JobStatus.completed)

        claimed = store.claim_completed(job_id)

        assert claimed is not None and claimed.id == job_id
        assert store.claim_completed(job_id) is None
        assert job_id not in store

    @staticmethod
    def test_claim_completed_ignores_unfinished_jobs(store: JobStore) -> None:
        running = store.create_job()
        store.set_status(running, status=JobStatus.downloading, progress=5.0)
        failed = store.create_job()
        store.set_status(failed, status=JobStatus.error, error="boom")

        assert store.claim_completed(running) is None
        assert store.claim_completed(failed) is None
        assert store.claim_completed("missing") is None
        assert running in store and failed in store

    @staticmethod
    def test_evict_expired_drops_only_old_finished_jobs(store: JobStore) -> None:
        running = store.create_job()
        old_done = store.create_job()
        store.set_status(old_done, status=JobStatus.completed)
        fresh_done = store.create_job()
        store.set_status(fresh_done, status=JobStatus.error, error="x")

        old_job = store.get_status(old_done)
        fresh_job = store.get_status(fresh_done)
        assert old_job is not None and fresh_job is not None
        now = fresh_job.updated_at + 10
        store._jobs[old_done] = old_job.model_copy(update={"updated_at": now - 7200})

        evicted = store.evict_expired(max_age=3600, now=now)

        assert evicted == [old_done]
        assert running in store
        assert fresh_done in store

    @staticmethod
    def test_list_jobs(store: JobStore) -> None:
        id1 = store.create_job(url="url1")
        id2 = store.create_job(url="url2")

        assert {job.id for job in store.list_jobs()} == {id1, id2}
