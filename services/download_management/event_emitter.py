"""
Event Emitter
=============

Fans out download job lifecycle transitions to the log and to subscriber
callbacks (status pages, notifications, tests).
"""

import logging
from threading import Lock
from typing import Callable, Dict, List, Optional

from .models import Job, JobStatus

logger = logging.getLogger("DownloadManagement.EventEmitter")

Subscriber = Callable[[str, dict], None]


class EventEmitter:
    """
    Emits events for job transitions.

    Events:
    - download:queued
    - download:started
    - download:retrying
    - download:completed
    - download:failed
    - download:error
    - download:state_changed (every transition)
    """

    EVENT_NAMES: Dict[JobStatus, str] = {
        JobStatus.QUEUED: 'download:queued',
        JobStatus.DOWNLOADING: 'download:started',
        JobStatus.RETRYING: 'download:retrying',
        JobStatus.COMPLETED: 'download:completed',
        JobStatus.FAILED: 'download:failed',
        JobStatus.ERROR: 'download:error',
    }

    def __init__(self):
        self.logger = logging.getLogger("DownloadManagement.EventEmitter")
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()

    # ------------------------------------------------------------------
    # Wiring helpers
    # ------------------------------------------------------------------
    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(event, payload)``; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def on_transition(self, job: Job, previous: Optional[JobStatus]):
        """JobStore listener: log the transition and notify subscribers."""
        self._log_transition(job, previous)

        payload = job.to_dict()
        payload['previous_status'] = previous.value if previous else None

        self._emit(self.EVENT_NAMES[job.status], payload)
        if previous is not None:
            self._emit('download:state_changed', payload)

    def _log_transition(self, job: Job, previous: Optional[JobStatus]):
        label = job.resource_ref.title or job.resource_ref.book_id
        if previous is None:
            self.logger.info(f"Queued download {job.id} ({label})")
        elif job.status is JobStatus.COMPLETED:
            self.logger.info(f"Download {job.id} completed: {job.artifact_path}")
        elif job.status in (JobStatus.FAILED, JobStatus.ERROR):
            self.logger.warning(
                "Download %s %s (%s): %s",
                job.id, job.status.value, job.reason.value if job.reason else 'unknown',
                job.error_message or 'no details',
            )
        elif job.status is JobStatus.RETRYING:
            self.logger.info(
                f"Download {job.id} will retry after attempt {job.attempt_count} "
                f"({job.last_failure.value if job.last_failure else 'failure'})"
            )
        else:
            self.logger.debug(f"Download {job.id}: {previous.value} → {job.status.value}")

    def _emit(self, event: str, data: dict):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, data)
            except Exception as e:
                self.logger.error(f"Error emitting event {event}: {e}")
