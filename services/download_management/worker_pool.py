"""
Worker Pool
===========

Fixed set of worker threads draining the work queue. Each worker runs one
job to a stopping point (completed, failed, or parked for retry) before it
takes the next, which bounds concurrent downloads to the pool size.

Per attempt:
QUEUED/RETRYING → DOWNLOADING → fetch
    success → ingest → COMPLETED (or ERROR on ingest failure)
    failure → retry policy → RETRYING (re-queued after backoff) or FAILED
"""

import threading
from datetime import timedelta
from typing import List, Optional, Tuple

from utils.logger import get_module_logger

from .errors import IngestError
from .fetch_client import BaseFetchClient
from .ingest_sink import IngestSink
from .job_store import JobStore
from .models import (
    FailureReason,
    FetchFailure,
    FetchFailureKind,
    FetchResult,
    FetchSuccess,
    GiveUp,
    Job,
    JobStatus,
)
from .queue_manager import RetryScheduler, WorkQueue
from .retry_handler import RetryPolicy

logger = get_module_logger("DownloadManagement.WorkerPool")

RUNNABLE_STATUSES = (JobStatus.QUEUED, JobStatus.RETRYING)


class WorkerPool:
    """
    Bounded pool of download workers.

    Workers never sleep through a retry backoff: failed jobs are handed to
    the RetryScheduler and the worker moves on. Every write goes through the
    JobStore compare-and-set, so a job the watchdog already failed is simply
    abandoned by its worker.
    """

    def __init__(self, store: JobStore, work_queue: WorkQueue, scheduler: RetryScheduler,
                 fetch_client: BaseFetchClient, retry_policy: RetryPolicy, ingest_sink: IngestSink,
                 size: int = 3, poll_interval: float = 0.5):
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.logger = logger
        self.store = store
        self.work_queue = work_queue
        self.scheduler = scheduler
        self.fetch_client = fetch_client
        self.retry_policy = retry_policy
        self.ingest_sink = ingest_sink
        self.size = size
        self.poll_interval = poll_interval

        self._threads: List[threading.Thread] = []
        self._running = False
        self._lock = threading.Lock()
        self._active = 0

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    def start(self):
        with self._lock:
            if self._running:
                return
            self._running = True
            self._threads = [
                threading.Thread(target=self._worker_loop, name=f"DownloadWorker-{index + 1}", daemon=True)
                for index in range(self.size)
            ]
        for thread in self._threads:
            thread.start()
        self.logger.debug(f"Started {self.size} download worker(s)")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop taking new work and wait for in-flight jobs.

        Returns:
            True when every worker exited within ``timeout``
        """
        with self._lock:
            self._running = False
            threads = list(self._threads)

        for thread in threads:
            if thread is threading.current_thread():
                continue
            thread.join(timeout=timeout)

        alive = [thread.name for thread in threads if thread.is_alive()]
        if alive:
            self.logger.warning(f"Workers still busy after stop timeout: {', '.join(alive)}")
            return False

        with self._lock:
            self._threads = []
        self.logger.debug("Download workers stopped")
        return True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        """Workers currently processing a job."""
        with self._lock:
            return self._active

    def _worker_loop(self):
        while self._running:
            job_id = self.work_queue.get(timeout=self.poll_interval)
            if job_id is None:
                if self.work_queue.closed:
                    break
                continue

            with self._lock:
                self._active += 1
            try:
                self.process_job(job_id)
            except Exception:
                self.logger.exception(f"Unexpected error while processing job {job_id}")
            finally:
                with self._lock:
                    self._active -= 1

        self.logger.debug(f"{threading.current_thread().name} exiting")

    # ============================================================================
    # JOB PROCESSING
    # ============================================================================

    def process_job(self, job_id: str):
        """Run one attempt of ``job_id`` to a stopping point."""
        job = self.store.get(job_id)
        if job is None:
            self.logger.debug(f"Job {job_id} no longer exists; skipping")
            return
        if job.status not in RUNNABLE_STATUSES:
            self.logger.debug(f"Job {job_id} is {job.status.value}; skipping")
            return

        if not self.store.transition(job_id, job.status, JobStatus.DOWNLOADING, increment_attempt=True):
            self.logger.debug(f"Job {job_id} changed before it could start; abandoning")
            return

        job = self.store.get(job_id)
        if job is None or job.status is not JobStatus.DOWNLOADING:
            return

        self.logger.debug(
            f"Attempt {job.attempt_count}/{self.retry_policy.max_attempts} for job {job_id}"
        )

        result, use_bypass = self._fetch(job)
        if result.ok:
            self._finish_success(job, result, use_bypass)
        else:
            self._finish_failure(job, result, use_bypass)

    def _fetch(self, job: Job) -> Tuple[FetchResult, bool]:
        """Fetch once, switching to the bypass proxy when the direct path is blocked."""
        bypass_available = self.fetch_client.bypass_enabled
        use_bypass = job.use_bypass and bypass_available

        result = self._safe_fetch(job, use_bypass)

        if (not result.ok and result.kind is FetchFailureKind.BYPASS_REQUIRED
                and not use_bypass and bypass_available):
            self.logger.info(f"Direct download blocked for job {job.id}; retrying through bypass proxy")
            use_bypass = True
            result = self._safe_fetch(job, True)

        if not result.ok and result.kind is FetchFailureKind.BYPASS_REQUIRED and use_bypass:
            result = FetchFailure(
                FetchFailureKind.TRANSIENT,
                result.message or "Blocked through bypass proxy",
                url=result.url,
                via_bypass=True,
            )

        return result, use_bypass

    def _safe_fetch(self, job: Job, via_bypass: bool) -> FetchResult:
        try:
            return self.fetch_client.fetch(job.resource_ref, via_bypass=via_bypass)
        except Exception as exc:
            self.logger.exception(f"Fetch client raised for job {job.id}")
            return FetchFailure(FetchFailureKind.TRANSIENT, f"Fetch raised: {exc}", via_bypass=via_bypass)

    def _finish_success(self, job: Job, result: FetchSuccess, use_bypass: bool):
        # Ingest even when the job was timed out meanwhile; the status stays as set
        try:
            artifact_path = self.ingest_sink.ingest(job.resource_ref, result.content)
        except IngestError as exc:
            self._mark_ingest_error(job, str(exc), use_bypass)
            return
        except Exception as exc:
            self.logger.exception(f"Unexpected ingest failure for job {job.id}")
            self._mark_ingest_error(job, f"Unexpected ingest failure: {exc}", use_bypass)
            return

        if not self.store.transition(job.id, JobStatus.DOWNLOADING, JobStatus.COMPLETED,
                                     artifact_path=artifact_path, use_bypass=use_bypass):
            current = self.store.get(job.id)
            self.logger.info(
                f"Job {job.id} was {current.status.value if current else 'evicted'} before completing; "
                f"artifact kept at {artifact_path}"
            )

    def _mark_ingest_error(self, job: Job, message: str, use_bypass: bool):
        if not self.store.transition(job.id, JobStatus.DOWNLOADING, JobStatus.ERROR,
                                     reason=FailureReason.INGEST, error_message=message,
                                     use_bypass=use_bypass):
            self.logger.debug(f"Job {job.id} superseded; ingest error not recorded: {message}")

    def _finish_failure(self, job: Job, failure: FetchFailure, use_bypass: bool):
        decision = self.retry_policy.decide(failure.kind, job.attempt_count, failure.retry_after)

        if isinstance(decision, GiveUp):
            message = failure.message or decision.detail
            if not self.store.transition(job.id, JobStatus.DOWNLOADING, JobStatus.FAILED,
                                         reason=decision.reason, error_message=message,
                                         last_failure=failure.kind, use_bypass=use_bypass):
                self.logger.debug(f"Job {job.id} superseded; give-up not recorded")
            return

        next_attempt_at = self.store.now() + timedelta(seconds=decision.delay)
        if not self.store.transition(job.id, JobStatus.DOWNLOADING, JobStatus.RETRYING,
                                     error_message=failure.message, last_failure=failure.kind,
                                     next_attempt_at=next_attempt_at, use_bypass=use_bypass):
            self.logger.debug(f"Job {job.id} superseded; retry not scheduled")
            return

        if not self.scheduler.schedule(job.id, decision.delay):
            self.logger.debug(f"Retry scheduler stopped; failing job {job.id}")
            self.store.transition(job.id, JobStatus.RETRYING, JobStatus.FAILED,
                                  reason=FailureReason.SHUTDOWN,
                                  error_message="Orchestrator shut down before the retry")
