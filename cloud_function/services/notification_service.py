"""
Notification channel for progress and terminal events.

The pipeline only emits ProgressEvent records; how they reach the end user
(chat bot message edits, WebSocket push, ...) is up to the external notifier.
"""
import threading
from typing import List

from config import NOTIFY_URL
from models.job import ProgressEvent
from services.logging_service import get_logger


class LoggingNotifier:
    """Writes events to the structured log only."""

    def notify(self, event: ProgressEvent):
        get_logger().info(
            f"Progress {event.percent}%: {event.step_description}",
            job_id=event.job_id,
            status=event.status,
            percent=event.percent,
            retry_available=event.retry_available,
        )


class CloudTasksNotifier:
    """Posts each event to the external notifier endpoint through Cloud Tasks."""

    def __init__(self, dispatcher, url: str = NOTIFY_URL):
        self.dispatcher = dispatcher
        self.url = url

    def notify(self, event: ProgressEvent):
        LoggingNotifier().notify(event)
        if not self.url:
            return
        try:
            self.dispatcher.enqueue(self.url, event.to_dict())
        except Exception as e:
            get_logger().warning(f"Failed to enqueue notification: {e}", job_id=event.job_id)


class CollectingNotifier:
    """Keeps events in memory (tests, local runs)."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[ProgressEvent] = []

    def notify(self, event: ProgressEvent):
        with self._lock:
            self.events.append(event)

    def events_for(self, job_id: str) -> List[ProgressEvent]:
        with self._lock:
            return [e for e in self.events if e.job_id == job_id]

    def percents(self, job_id: str) -> List[int]:
        return [e.percent for e in self.events_for(job_id)]
