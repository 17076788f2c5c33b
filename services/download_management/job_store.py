"""
Job Store
=========

In-memory, thread-safe record of every download job:
- Idempotent creation (one active job per book identity)
- Compare-and-set status transitions validated by the state machine
- Immutable snapshots for every read
- Retention-based eviction of finished jobs
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from utils.logger import get_module_logger

from .models import FailureReason, FetchFailureKind, Job, JobStatus, ResourceRef
from .state_machine import StateMachine

logger = get_module_logger("DownloadManagement.JobStore")

JobListener = Callable[[Job, Optional[JobStatus]], None]

_UNSET = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """
    Owns all job records.

    Features:
    - Enforces one active (non-terminal) job per ``ResourceRef.book_id``
    - ``transition`` is a compare-and-set: it only succeeds when the job is
      still in the expected state, so a stale worker cannot overwrite an
      outcome that the watchdog already recorded
    - Listeners are notified after each change, outside the store lock

    Eviction policy: ``retention_seconds=None`` keeps finished jobs forever;
    otherwise terminal jobs whose last update is older than the retention are
    removed by ``evict_expired``.
    """

    def __init__(self, retention_seconds: Optional[float] = 3600,
                 clock: Callable[[], datetime] = utcnow,
                 state_machine: Optional[StateMachine] = None,
                 id_factory: Callable[[], str] = lambda: uuid.uuid4().hex):
        self.logger = logger
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._state_machine = state_machine or StateMachine()
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._active_by_identity: Dict[str, str] = {}
        self._listeners: List[JobListener] = []

    def now(self) -> datetime:
        return self._clock()

    def add_listener(self, listener: JobListener):
        """Register a callable invoked as ``listener(job, previous_status)``."""
        with self._lock:
            self._listeners.append(listener)

    # ============================================================================
    # Creation & lookup
    # ============================================================================

    def create_or_get(self, resource_ref: ResourceRef) -> Tuple[Job, bool]:
        """
        Create a QUEUED job unless an active one exists for the same book.

        Returns:
            (job snapshot, created) where ``created`` is False when the
            existing active job was returned instead
        """
        with self._lock:
            existing_id = self._active_by_identity.get(resource_ref.identity)
            if existing_id is not None:
                existing = self._jobs.get(existing_id)
                if existing is not None and not existing.is_terminal:
                    return existing, False

            job_id = self._id_factory()
            while job_id in self._jobs:
                job_id = self._id_factory()

            now = self._clock()
            job = Job(
                id=job_id,
                resource_ref=resource_ref,
                status=JobStatus.QUEUED,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = job
            self._active_by_identity[resource_ref.identity] = job_id
            listeners = list(self._listeners)

        self.logger.debug(f"Created job {job_id} for book {resource_ref.book_id}")
        self._notify(listeners, job, None)
        return job, True

    def create(self, resource_ref: ResourceRef) -> str:
        """Create (or reuse the active) job for ``resource_ref`` and return its id."""
        job, _created = self.create_or_get(resource_ref)
        return job.id

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # ============================================================================
    # Transitions
    # ============================================================================

    def transition(self, job_id: str, expected_current: JobStatus, next_status: JobStatus, *,
                   reason: Optional[FailureReason] = None,
                   error_message: Optional[str] = None,
                   artifact_path: Optional[str] = None,
                   next_attempt_at=_UNSET,
                   use_bypass: Optional[bool] = None,
                   last_failure: Optional[FetchFailureKind] = None,
                   increment_attempt: bool = False) -> bool:
        """
        Compare-and-set a job from ``expected_current`` to ``next_status``.

        Args:
            job_id: Job identifier
            expected_current: Status the caller believes the job is in
            next_status: Target status (must be allowed by the state machine)
            reason: Failure reason, required for FAILED/ERROR
            error_message: Human readable failure detail
            artifact_path: Published artifact, applied only on COMPLETED
            next_attempt_at: When a RETRYING job becomes ready again
            use_bypass: Sticky flag routing later attempts through the bypass proxy
            last_failure: Kind of the failure that caused this transition
            increment_attempt: Count a new fetch attempt (entering DOWNLOADING only)

        Returns:
            True if the job was in ``expected_current`` and now is in ``next_status``
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                self.logger.debug(f"Transition for unknown job {job_id} ignored")
                return False

            if job.status is not expected_current:
                self.logger.debug(
                    f"Job {job_id}: expected {expected_current.value} but found "
                    f"{job.status.value}; {next_status.value} rejected"
                )
                return False

            if not self._state_machine.is_valid_transition(job.status, next_status, reason):
                self.logger.debug(
                    f"Invalid state transition for job {job_id}: "
                    f"{job.status.value} → {next_status.value} (reason={reason})"
                )
                return False

            changes = {
                'status': next_status,
                'updated_at': self._clock(),
            }
            if next_status in (JobStatus.FAILED, JobStatus.ERROR):
                changes['reason'] = reason
            if error_message is not None:
                changes['error_message'] = error_message
            if use_bypass is not None:
                changes['use_bypass'] = bool(use_bypass)
            if last_failure is not None:
                changes['last_failure'] = last_failure

            if next_status is JobStatus.DOWNLOADING:
                if increment_attempt:
                    changes['attempt_count'] = job.attempt_count + 1
                changes['next_attempt_at'] = None
            elif next_status is JobStatus.RETRYING:
                changes['next_attempt_at'] = None if next_attempt_at is _UNSET else next_attempt_at
            else:
                changes['next_attempt_at'] = None

            if next_status is JobStatus.COMPLETED:
                changes['artifact_path'] = artifact_path

            updated = replace(job, **changes)
            self._jobs[job_id] = updated

            if updated.is_terminal:
                identity = job.resource_ref.identity
                if self._active_by_identity.get(identity) == job_id:
                    del self._active_by_identity[identity]

            listeners = list(self._listeners)

        self.logger.debug(f"Job {job_id}: {job.status.value} → {next_status.value}")
        self._notify(listeners, updated, job.status)
        return True

    def force_fail(self, job_id: str, reason: FailureReason,
                   error_message: Optional[str] = None) -> Optional[Job]:
        """
        Force a non-terminal job to FAILED, whatever state it is in.

        Retries the compare-and-set while the job keeps moving between
        non-terminal states. Returns the failed snapshot, or None when the job
        is unknown or already terminal.

        Raises:
            ValueError: ``reason`` is not one a waiting job may be failed with
        """
        if reason not in self._state_machine.FORCED_REASONS:
            raise ValueError(f"Cannot force-fail a job with reason {reason.value}")
        while True:
            job = self.get(job_id)
            if job is None or job.is_terminal:
                return None
            if self.transition(job_id, job.status, JobStatus.FAILED,
                               reason=reason, error_message=error_message):
                return self.get(job_id)

    # ============================================================================
    # Queries
    # ============================================================================

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """All jobs in creation order, optionally filtered by status."""
        with self._lock:
            jobs = list(self._jobs.values())
        if status is None:
            return jobs
        return [job for job in jobs if job.status is status]

    def active_jobs(self) -> List[Job]:
        return [job for job in self.list_jobs() if not job.is_terminal]

    def overdue_jobs(self, timeout_seconds: float, now: Optional[datetime] = None) -> List[Job]:
        """Non-terminal jobs created more than ``timeout_seconds`` ago."""
        now = now or self._clock()
        deadline_delta = timedelta(seconds=timeout_seconds)
        return [job for job in self.active_jobs() if now - job.created_at > deadline_delta]

    def statistics(self) -> Dict[str, int]:
        """Counts by status, plus ``total`` and ``total_active``."""
        stats = {status.value: 0 for status in JobStatus}
        jobs = self.list_jobs()
        for job in jobs:
            stats[job.status.value] += 1
        stats['total'] = len(jobs)
        stats['total_active'] = sum(1 for job in jobs if not job.is_terminal)
        return stats

    def grouped_by_status(self) -> Dict[JobStatus, List[Job]]:
        grouped: Dict[JobStatus, List[Job]] = {status: [] for status in JobStatus}
        for job in self.list_jobs():
            grouped[job.status].append(job)
        return grouped

    # ============================================================================
    # Retention
    # ============================================================================

    def evict_expired(self, now: Optional[datetime] = None) -> List[str]:
        """
        Remove terminal jobs whose last update is older than the retention.

        Returns:
            Ids of the evicted jobs (always empty when retention is None)
        """
        if self.retention_seconds is None:
            return []

        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.retention_seconds)
        evicted: List[str] = []

        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.is_terminal and job.updated_at <= cutoff:
                    del self._jobs[job_id]
                    evicted.append(job_id)

        if evicted:
            self.logger.debug(f"Evicted {len(evicted)} finished job(s)")
        return evicted

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _notify(self, listeners: List[JobListener], job: Job, previous: Optional[JobStatus]):
        for listener in listeners:
            try:
                listener(job, previous)
            except Exception:
                self.logger.exception(f"Job listener failed for job {job.id}")
