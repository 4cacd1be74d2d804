import json
from types import SimpleNamespace
from unittest import mock

import pytest

import main
from conftest import FakeAI, RecordingDispatcher, build_orchestrator, make_book
from models.job import ChapterStatus
from services.exceptions import (
    AIServiceError, InvalidStateTransition, JobNotFound, StorageError
)


class FakeRequest:
    def __init__(self, path, json_body=None, method="POST", args=None):
        self.path = path
        self.method = method
        self._json = json_body
        self.args = args or {}

    def get_json(self, silent=False):
        return self._json


def call(path, body=None, **kwargs):
    response, code = main.main_http_entry(FakeRequest(path, body, **kwargs))
    return json.loads(response), code


SPANS = json.dumps([
    {"title": "One", "startPage": 1, "endPage": 2, "isEssential": True},
    {"title": "Two", "startPage": 3, "endPage": 4, "isEssential": True},
])


def patched(orchestrator):
    return mock.patch("main.get_orchestrator", return_value=orchestrator), \
        mock.patch("tasks.chapter_worker.get_orchestrator", return_value=orchestrator), \
        mock.patch("tasks.finalizer.get_orchestrator", return_value=orchestrator)


@pytest.fixture
def queued():
    """Orchestrator whose dispatched units wait until the test runs them."""
    orchestrator = build_orchestrator(FakeAI(segmentation=SPANS), dispatcher=RecordingDispatcher(inline=False))
    first, second, third = patched(orchestrator)
    with first, second, third:
        yield orchestrator


@pytest.fixture
def orchestrator():
    orchestrator = build_orchestrator(FakeAI(segmentation=SPANS), dispatcher=RecordingDispatcher())
    first, second, third = patched(orchestrator)
    with first, second, third:
        yield orchestrator


@pytest.fixture
def stub():
    stub = mock.MagicMock()
    first, second, third = patched(stub)
    with first, second, third:
        yield stub


def test_unknown_path(stub):
    body, code = call("/nope", {})
    assert code == 404


class TestCreateJob:
    def test_requires_file_name(self, orchestrator):
        assert call("/create_job", {"level": "light"})[1] == 400
        assert call("/create_job", None)[1] == 400

    def test_rejects_unknown_level(self, orchestrator):
        body, code = call("/create_job", {"file_name": "a.pdf", "level": "extreme"})
        assert code == 400
        assert "extreme" in body["error"]

    def test_rejects_non_object_context(self, orchestrator):
        assert call("/create_job", {"file_name": "a.pdf", "context": ["x"]})[1] == 400

    def test_returns_upload_url(self, orchestrator):
        body, code = call("/create_job", {"file_name": "Book.pdf", "level": "heavy", "context": {"chat_id": 1}})

        assert code == 200
        assert body["status"] == "uploading"
        assert body["source_key"] == f"original/{body['job_id']}"
        assert "method=PUT" in body["upload_url"]
        job = orchestrator.store.get(body["job_id"])
        assert (job.level.value, job.context) == ("heavy", {"chat_id": 1})


def test_full_flow_over_http(orchestrator):
    body, _ = call("/create_job", {"file_name": "Book.pdf", "level": "light"})
    job_id = body["job_id"]
    orchestrator.blobs.put(body["source_key"], make_book(["One", "Two"]))

    body, code = call("/process_book", {"job_id": job_id})
    assert (code, body["status"]) == (200, "accepted")

    body, code = call("/job_status", None, method="GET", args={"job_id": job_id})
    assert code == 200
    assert body["status"] == "completed"
    assert body["download_url"].startswith("https://signed.example/final/")
    assert [c["title"] for c in body["chapters"]] == ["One", "Two"]


class TestStatusCodes:
    def test_job_id_required(self, stub):
        for path in ("/process_book", "/prepare_book", "/finalize_book", "/cancel_job", "/job_status"):
            assert call(path, {})[1] == 400, path
        assert call("/process_chapter", {"job_id": "j"})[1] == 400

    def test_unknown_job_is_404(self, orchestrator):
        assert call("/process_chapter", {"job_id": "missing", "chapter_id": "chapter-001"})[1] == 404
        assert call("/cancel_job", {"job_id": "missing"})[1] == 404
        assert call("/job_status", {"job_id": "missing"})[1] == 404

    def test_unknown_chapter_is_404(self, orchestrator):
        job = orchestrator.create_job("Book.pdf", "medium")
        body, code = call("/process_chapter", {"job_id": job.job_id, "chapter_id": "chapter-042"})
        assert code == 404

    def test_retryable_failure_is_500(self, stub):
        stub.condense_chapter.side_effect = StorageError("gcs unavailable")
        assert call("/process_chapter", {"job_id": "j", "chapter_id": "c"})[1] == 500

        stub.assemble.side_effect = RuntimeError("unexpected")
        assert call("/finalize_book", {"job_id": "j"})[1] == 500

    def test_permanent_failure_is_200(self, stub):
        stub.process_job.side_effect = InvalidStateTransition("job is uploading")
        body, code = call("/prepare_book", {"job_id": "j"})

        assert code == 200
        assert body["error_kind"] == "InvalidStateTransition"

    def test_upload_not_found_is_retryable(self, stub):
        stub.mark_uploaded.side_effect = StorageError("not uploaded yet")
        assert call("/process_book", {"job_id": "j"})[1] == 500

    def test_failed_job_finalizes_with_200(self, orchestrator):
        orchestrator.condenser.ai.handlers["condensation"] = AIServiceError("down")
        body, _ = call("/create_job", {"file_name": "Book.pdf"})
        orchestrator.blobs.put(body["source_key"], make_book(["One", "Two"]))
        call("/process_book", {"job_id": body["job_id"]})

        result, code = call("/finalize_book", {"job_id": body["job_id"]})

        assert code == 200
        assert result["status"] == "failed"
        assert result["error_kind"] == "NothingToAssemble"

    def test_cancel(self, orchestrator):
        job = orchestrator.create_job("Book.pdf", "medium")
        body, code = call("/cancel_job", {"job_id": job.job_id})

        assert code == 200
        assert (body["status"], body["cancel_requested"]) == ("failed", True)


class TestUploadTrigger:
    def test_ignores_other_prefixes(self, stub):
        main.on_upload_finalized(SimpleNamespace(data={"name": "condensed/j/chapter-001"}))
        stub.mark_uploaded.assert_not_called()

    def test_marks_job_uploaded(self, stub):
        main.on_upload_finalized(SimpleNamespace(data={"name": "original/job-7"}))
        stub.mark_uploaded.assert_called_once_with("job-7")

    def test_retryable_error_is_raised_for_redelivery(self, stub):
        stub.mark_uploaded.side_effect = StorageError("not visible yet")
        with pytest.raises(StorageError):
            main.on_upload_finalized(SimpleNamespace(data={"name": "original/job-7"}))

    def test_permanent_error_is_swallowed(self, stub):
        stub.mark_uploaded.side_effect = JobNotFound("gone")
        main.on_upload_finalized(SimpleNamespace(data={"name": "original/job-7"}))


def uploaded_job(orchestrator, pdf=None):
    body, _ = call("/create_job", {"file_name": "Book.pdf", "level": "medium"})
    orchestrator.blobs.put(body["source_key"], pdf or make_book(["One", "Two"]))
    return body["job_id"]


class TestPrepareBook:
    def test_prepare_book_fans_out_and_answers_200(self, queued):
        job_id = uploaded_job(queued)
        assert call("/process_book", {"job_id": job_id})[1] == 200
        dispatcher = queued.dispatcher
        assert dispatcher.prepare_calls == [job_id]

        body, code = call("/prepare_book", {"job_id": job_id})

        assert code == 200
        assert body == {"status": "processing", "job_id": job_id}
        assert dispatcher.chapter_calls == [(job_id, "chapter-001"), (job_id, "chapter-002")]
        assert len(queued.store.get(job_id).chapters) == 2

    def test_prepare_book_on_finished_job_answers_200(self, orchestrator):
        job_id = uploaded_job(orchestrator)
        call("/process_book", {"job_id": job_id})

        body, code = call("/prepare_book", {"job_id": job_id})

        assert (code, body["status"]) == (200, "completed")


class TestCancelJob:
    def test_cancel_processing_job_with_every_chapter_done(self, queued):
        job_id = uploaded_job(queued)
        call("/process_book", {"job_id": job_id})
        call("/prepare_book", {"job_id": job_id})
        for chapter in queued.store.get(job_id).chapters:
            queued.store.update_chapter(job_id, chapter.chapter_id, status=ChapterStatus.COMPLETED)

        body, code = call("/cancel_job", {"job_id": job_id})

        assert code == 200
        assert (body["status"], body["cancel_requested"]) == ("failed", True)
        assert queued.dispatcher.assembly_calls == []
        assert queued.store.get(job_id).error_kind == "JobCancelled"


def test_oversized_upload_is_413(queued):
    pdf = make_book(["One", "Two"])
    queued.pdf.max_bytes = len(pdf) - 1
    job_id = uploaded_job(queued, pdf)

    body, code = call("/process_book", {"job_id": job_id})

    assert code == 413
    assert body["error_kind"] == "DocumentTooLarge"
    assert queued.store.get(job_id).status.value == "failed"
    assert queued.dispatcher.prepare_calls == []
