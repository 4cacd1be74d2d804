"""
Task dispatch for the three units of work:

    prepare_book     post-upload processing (load, metadata, segmentation, fan-out)
    process_chapter  one condensation unit per essential chapter
    finalize_book    assembly, after fan-in

In the deployed function each unit is an HTTP Cloud Task against this same
function; redelivery on 5xx is the queue's job and the queue's
max_concurrent_dispatches bounds chapter parallelism. LocalDispatcher runs
the same units on a thread pool.
"""
import datetime as dt
import json
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import tasks_v2
from google.protobuf import timestamp_pb2

from config import (
    CHAPTER_TASK_STAGGER_SECONDS, FUNCTION_URL, MAX_CONCURRENT_CHAPTERS, PROJECT_ID,
    QUEUE_NAME, REGION, SERVICE_ACCOUNT_EMAIL
)
from services.exceptions import DispatchError
from services.logging_service import get_logger


def create_cloud_task(
    client: tasks_v2.CloudTasksClient,
    queue_path: str,
    handler_url: str,
    payload: dict,
    delay_seconds: int = 0,
    service_account_email: str = SERVICE_ACCOUNT_EMAIL,
) -> str:
    """Creates a Cloud Task that POSTs payload to handler_url. Returns the task name."""
    http_request = {
        "http_method": tasks_v2.HttpMethod.POST,
        "url": handler_url,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(payload, ensure_ascii=False).encode(),
    }
    if service_account_email:
        http_request["oidc_token"] = {"service_account_email": service_account_email}

    task = {"http_request": http_request}

    if delay_seconds > 0:
        d = dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=delay_seconds)
        timestamp = timestamp_pb2.Timestamp()
        timestamp.FromDatetime(d)
        task["schedule_time"] = timestamp

    try:
        response = client.create_task(parent=queue_path, task=task)
    except gcp_exceptions.GoogleAPICallError as e:
        raise DispatchError(f"Failed to create task for {handler_url}: {e}") from e
    get_logger().debug(f"Created task: {response.name}", url=handler_url)
    return response.name


class CloudTasksDispatcher:
    def __init__(self, project_id: str = PROJECT_ID, region: str = REGION,
                 queue_name: str = QUEUE_NAME, function_url: str = FUNCTION_URL,
                 stagger_seconds: int = CHAPTER_TASK_STAGGER_SECONDS, client=None):
        self.client = client or tasks_v2.CloudTasksClient()
        self.queue_path = f"projects/{project_id}/locations/{region}/queues/{queue_name}"
        self.function_url = function_url.rstrip("/")
        self.stagger_seconds = stagger_seconds

    def enqueue(self, url: str, payload: dict, delay_seconds: int = 0) -> str:
        return create_cloud_task(self.client, self.queue_path, url, payload, delay_seconds)

    def enqueue_prepare(self, job_id: str):
        self.enqueue(f"{self.function_url}/prepare_book", {"job_id": job_id})

    def enqueue_chapters(self, job_id: str, chapter_ids: Iterable[str]):
        count = 0
        for i, chapter_id in enumerate(chapter_ids):
            self.enqueue(
                f"{self.function_url}/process_chapter",
                {"job_id": job_id, "chapter_id": chapter_id},
                delay_seconds=i * self.stagger_seconds,
            )
            count += 1
        get_logger().info("Chapter tasks enqueued", job_id=job_id, chapter_count=count)

    def enqueue_assembly(self, job_id: str):
        self.enqueue(f"{self.function_url}/finalize_book", {"job_id": job_id})


class LocalDispatcher:
    """
    Runs units of work on an in-process thread pool.

    Bind it to an orchestrator with attach() before dispatching. Failures
    inside a unit are logged with their traceback and counted in `errors`.
    """

    def __init__(self, max_workers: int = MAX_CONCURRENT_CHAPTERS):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="condense")
        self.orchestrator = None
        self.errors = []
        self._pending = 0
        self._idle = threading.Condition()

    def attach(self, orchestrator):
        self.orchestrator = orchestrator
        return self

    def _submit(self, description: str, unit: str, *args):
        if self.orchestrator is None:
            raise DispatchError("LocalDispatcher is not attached to an orchestrator")
        func = getattr(self.orchestrator, unit)
        with self._idle:
            self._pending += 1
        self.executor.submit(self._run, description, func, *args)

    def _run(self, description: str, func, *args):
        try:
            func(*args)
        except Exception as e:
            get_logger().error(f"{description} failed: {e}", traceback=traceback.format_exc())
            self.errors.append(e)
        finally:
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()

    def enqueue_prepare(self, job_id: str):
        self._submit(f"prepare_book({job_id})", "process_job", job_id)

    def enqueue_chapters(self, job_id: str, chapter_ids: Iterable[str]):
        for chapter_id in chapter_ids:
            self._submit(f"process_chapter({job_id}, {chapter_id})", "condense_chapter",
                         job_id, chapter_id)

    def enqueue_assembly(self, job_id: str):
        self._submit(f"finalize_book({job_id})", "assemble", job_id)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no unit is queued or running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self):
        self.executor.shutdown(wait=True)
