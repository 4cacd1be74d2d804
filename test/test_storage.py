import importlib.util
import os
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
from google.api_core import exceptions as gcp_exceptions

from conftest import RecordingDispatcher, no_sleep
from models.job import Chapter, ChapterStatus, CondensingLevel, Job, JobPhase, JobStatus
from services.exceptions import BlobNotFound, StorageError
from services.gcs_service import GcsService, LocalBlobStore, original_key
from services.job_store import InMemoryJobStore


def load_script(name):
    path = os.path.join(os.path.dirname(__file__), "..", "scripts", f"{name}.py")
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestLocalBlobStore:
    def test_put_get_size(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "blobs"))
        key = original_key("job-1")

        assert store.size(key) is None
        assert store.put(key, b"%PDF-1.7 data") == key
        assert store.size(key) == 13
        assert store.get(key) == b"%PDF-1.7 data"
        assert store.presigned_url(key, 60).startswith("file://")

    def test_missing_key(self, tmp_path):
        with pytest.raises(BlobNotFound):
            LocalBlobStore(str(tmp_path)).get("final/none")

    def test_keys_cannot_escape_root(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "blobs"))
        with pytest.raises(StorageError):
            store.put("../outside", b"x")


class TestGcsService:
    @pytest.fixture
    def client(self):
        return mock.MagicMock()

    def blob(self, client):
        return client.bucket.return_value.blob.return_value

    def test_put_returns_locator(self, client):
        service = GcsService(bucket_name="books", client=client)

        assert service.put("final/j", b"pdf") == "gs://books/final/j"
        _, kwargs = self.blob(client).upload_from_string.call_args
        assert kwargs["content_type"] == "application/pdf"

    def test_size(self, client):
        client.bucket.return_value.get_blob.return_value.size = 2048
        service = GcsService(bucket_name="books", client=client)

        assert service.size("original/j") == 2048

        client.bucket.return_value.get_blob.return_value = None
        assert service.size("original/j") is None

    def test_not_found(self, client):
        self.blob(client).download_as_bytes.side_effect = gcp_exceptions.NotFound("nope")
        with pytest.raises(BlobNotFound):
            GcsService(bucket_name="books", client=client).get("original/j")

    def test_api_error_is_retryable_storage_error(self, client):
        self.blob(client).upload_from_string.side_effect = gcp_exceptions.ServiceUnavailable("503")
        with pytest.raises(StorageError) as exc_info:
            GcsService(bucket_name="books", client=client).put("final/j", b"pdf")
        assert exc_info.value.retryable

    def test_signed_upload_url(self, client):
        client._credentials = mock.MagicMock(spec=["sign_bytes"])
        self.blob(client).generate_signed_url.return_value = "https://storage.googleapis.com/signed"

        url = GcsService(bucket_name="books", client=client).presigned_url("original/j", 3600, method="PUT")

        assert url == "https://storage.googleapis.com/signed"
        _, kwargs = self.blob(client).generate_signed_url.call_args
        assert kwargs["method"] == "PUT"
        assert kwargs["version"] == "v4"
        assert kwargs["expiration"] == timedelta(seconds=3600)
        assert kwargs["content_type"] == "application/pdf"
        assert "access_token" not in kwargs


class TestStuckJobs:
    @pytest.fixture
    def script(self):
        return load_script("check_stuck_jobs")

    def make_job(self, store, job_id, phase, chapter_statuses=()):
        job = Job.new(job_id, original_key(job_id), CondensingLevel.MEDIUM, "Book", expiry_days=7)
        store.create(job)
        store.transition(job_id, JobStatus.QUEUED)
        store.transition(job_id, JobStatus.PROCESSING, phase=JobPhase.SEGMENTING)
        if phase != JobPhase.SEGMENTING:
            store.set_chapters(job_id, [
                Chapter(chapter_id=f"chapter-{i + 1:03d}", index=i, title=f"Ch {i + 1}",
                        start_page=i + 1, end_page=i + 1, status=status)
                for i, status in enumerate(chapter_statuses)
            ])
        if phase == JobPhase.ASSEMBLING:
            store.claim_assembly(job_id)
        return store.get(job_id)

    def test_finds_only_old_processing_jobs(self, script):
        store = InMemoryJobStore(sleep=no_sleep)
        self.make_job(store, "busy", JobPhase.SEGMENTING)
        store.create(Job.new("waiting", original_key("waiting"), CondensingLevel.LIGHT, "Other", 7))

        later = datetime.now(timezone.utc) + timedelta(minutes=45)
        assert [j.job_id for j in script.find_stuck_jobs(store, 30, now=later)] == ["busy"]
        assert script.find_stuck_jobs(store, 30) == []

    def test_requeues_the_waiting_unit(self, script):
        store = InMemoryJobStore(sleep=no_sleep)
        dispatcher = RecordingDispatcher(inline=False)

        segmenting = self.make_job(store, "a", JobPhase.SEGMENTING)
        condensing = self.make_job(store, "b", JobPhase.CONDENSING,
                                   [ChapterStatus.COMPLETED, ChapterStatus.PENDING, ChapterStatus.PROCESSING])
        fanned_in = self.make_job(store, "c", JobPhase.CONDENSING, [ChapterStatus.COMPLETED])
        assembling = self.make_job(store, "d", JobPhase.ASSEMBLING, [ChapterStatus.COMPLETED])

        assert script.requeue(segmenting, dispatcher) == "prepare_book"
        assert script.requeue(condensing, dispatcher) == "2 chapter(s)"
        assert script.requeue(fanned_in, dispatcher) == "fan-in check"
        assert script.requeue(assembling, dispatcher) == "finalize_book"

        assert dispatcher.prepare_calls == ["a", "c"]
        assert dispatcher.chapter_calls == [("b", "chapter-002"), ("b", "chapter-003")]
        assert dispatcher.assembly_calls == ["d"]
