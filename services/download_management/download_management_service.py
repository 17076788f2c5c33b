"""
Download Management Service
===========================

Main service coordinating book download jobs:
QUEUED → DOWNLOADING → COMPLETED
(on failure) DOWNLOADING → RETRYING → DOWNLOADING ... → FAILED
(on ingest failure) DOWNLOADING → ERROR

Features:
- Idempotent submission (one active job per book)
- Bounded worker pool with exponential backoff retries
- Cloudflare bypass proxy fallback
- Global per-job timeout enforced by a watchdog thread
- Atomic, exactly-once hand-off into the ingest directory
- Retention-based cleanup of finished jobs
"""

import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from utils.logger import get_module_logger

from .errors import ArtifactNotAvailableError, IngestError, JobNotFoundError, OrchestratorShutdownError
from .event_emitter import EventEmitter
from .fetch_client import BaseFetchClient, HttpFetchClient
from .ingest_sink import IngestSink
from .job_store import JobStore, utcnow
from .models import FailureReason, Job, JobStatus, ResourceRef
from .queue_manager import RetryScheduler, WorkQueue, queue_statistics
from .retry_handler import RetryPolicy
from .settings import DownloadSettings
from .worker_pool import RUNNABLE_STATUSES, WorkerPool

logger = get_module_logger("DownloadManagementService")


class DownloadOrchestrator:
    """
    Public entry point of the downloader.

    Coordinates:
    - Job store and state transitions
    - Work queue, retry scheduler and worker pool
    - Timeout watchdog and retention eviction
    - Lifecycle (start on first submit, graceful shutdown)
    """

    def __init__(self, settings: Optional[DownloadSettings] = None, *,
                 fetch_client: Optional[BaseFetchClient] = None,
                 ingest_sink: Optional[IngestSink] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable = utcnow,
                 event_emitter: Optional[EventEmitter] = None,
                 worker_poll_interval: float = 0.5):
        logger.debug("Initializing DownloadOrchestrator...")
        self.settings = settings or DownloadSettings()

        self.store = JobStore(retention_seconds=self.settings.retention_seconds, clock=clock)
        self.event_emitter = event_emitter or EventEmitter()
        self.store.add_listener(self.event_emitter.on_transition)

        self._owns_fetch_client = fetch_client is None
        self.fetch_client = fetch_client or HttpFetchClient(
            timeout=self.settings.download_timeout,
            bypass_enabled=self.settings.use_cf_bypass,
            bypass_url=self.settings.cloudflare_proxy_url,
            bypass_path=self.settings.cloudflare_proxy_path,
        )
        self.ingest_sink = ingest_sink or IngestSink(
            self.settings.ingest_dir,
            tmp_dir=self.settings.tmp_dir,
            verify_checksum=self.settings.verify_checksum,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.max_retry_delay,
            jitter=self.settings.retry_jitter,
        )

        self.work_queue = WorkQueue()
        self.scheduler = RetryScheduler(self.work_queue)
        self.worker_pool = WorkerPool(
            self.store,
            self.work_queue,
            self.scheduler,
            self.fetch_client,
            self.retry_policy,
            self.ingest_sink,
            size=self.settings.max_concurrent_downloads,
            poll_interval=worker_poll_interval,
        )

        # Lifecycle
        self._state_lock = threading.RLock()
        self._started = False
        self._accepting = True
        self._shutdown_complete = False

        # Watchdog
        self.watchdog_interval = self.settings.watchdog_interval
        self.monitor_running = False
        self.monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()

        logger.debug("DownloadOrchestrator ready")

    # ============================================================================
    # CORE OPERATIONS
    # ============================================================================

    def submit(self, resource_ref: Union[ResourceRef, Mapping[str, Any]]) -> str:
        """
        Submit a book for download.

        Args:
            resource_ref: ResourceRef, or a mapping with the same fields

        Returns:
            Job id (the existing active job's id when the book is already
            queued or downloading)

        Raises:
            OrchestratorShutdownError: After shutdown has begun
            InvalidResourceError: The reference has no book id
        """
        ref = self._coerce_resource(resource_ref)

        with self._state_lock:
            if not self._accepting:
                raise OrchestratorShutdownError("Orchestrator is shut down; not accepting new jobs")
            self._ensure_started()

            job, created = self.store.create_or_get(ref)
            if created:
                self.work_queue.put(job.id)
            else:
                logger.info(f"Book {ref.book_id} already has active job {job.id}")

        return job.id

    def status(self, job_id: str) -> Job:
        """
        Current snapshot of a job.

        Raises:
            JobNotFoundError: Unknown or evicted job id
        """
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def shutdown(self, timeout: Optional[float] = None):
        """
        Stop the orchestrator.

        New submissions are rejected, workers stop taking work and in-flight
        jobs are given ``timeout`` seconds to finish. Jobs still waiting in
        the queue or for a retry end as FAILED(SHUTDOWN). The watchdog stops
        last.
        """
        with self._state_lock:
            if self._shutdown_complete:
                return
            self._accepting = False
            started = self._started

        logger.info("Shutting down download orchestrator...")

        self.work_queue.close()
        self.scheduler.stop()
        if started and not self.worker_pool.stop(timeout=timeout):
            logger.warning("Shutdown timeout reached with downloads still in flight")

        failed = self._fail_pending_jobs()
        if failed:
            logger.info(f"Failed {failed} pending job(s) due to shutdown")

        self.stop_monitoring()

        if self._owns_fetch_client:
            self.fetch_client.close()

        with self._state_lock:
            self._shutdown_complete = True
        logger.info("Download orchestrator stopped")

    def start(self):
        """Start workers, retry scheduler and watchdog (idempotent)."""
        with self._state_lock:
            if not self._accepting:
                raise OrchestratorShutdownError("Orchestrator is shut down and cannot be restarted")
            self._ensure_started()

    def _ensure_started(self):
        if self._started:
            return
        self.scheduler.start()
        self.worker_pool.start()
        self.start_monitoring()
        self._started = True
        logger.info(
            f"Download orchestrator started with {self.worker_pool.size} worker(s), "
            f"job timeout {self.settings.job_timeout:g}s"
        )

    # ============================================================================
    # QUERIES
    # ============================================================================

    def list_jobs(self, status: Optional[Union[JobStatus, str]] = None) -> List[Job]:
        if isinstance(status, str):
            status = JobStatus(status.lower())
        return self.store.list_jobs(status)

    def queue_status(self) -> Dict[str, List[Dict[str, Any]]]:
        """Jobs grouped by status, JSON-friendly."""
        return {
            status.value: [job.to_dict() for job in jobs]
            for status, jobs in self.store.grouped_by_status().items()
        }

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.store.statistics())
        stats.update(queue_statistics(self.work_queue, self.scheduler))
        stats['active_workers'] = self.worker_pool.active_count
        return stats

    def read_artifact(self, job_id: str) -> Tuple[bytes, Job]:
        """
        Content of a completed job's artifact.

        Raises:
            JobNotFoundError: Unknown or evicted job id
            ArtifactNotAvailableError: Job not completed or file unreadable
        """
        job = self.status(job_id)
        if job.status is not JobStatus.COMPLETED or not job.artifact_path:
            raise ArtifactNotAvailableError(f"Job {job_id} is {job.status.value}; no artifact available")
        try:
            return self.ingest_sink.read_artifact(job.artifact_path), job
        except IngestError as exc:
            raise ArtifactNotAvailableError(str(exc)) from exc

    def subscribe(self, callback: Callable[[str, dict], None]) -> Callable[[], None]:
        """Receive ``(event, payload)`` for every job transition."""
        return self.event_emitter.subscribe(callback)

    def get_service_status(self) -> Dict[str, Any]:
        """Get service status and statistics."""
        return {
            'running': self._started and self._accepting,
            'accepting_jobs': self._accepting,
            'monitor_running': self.monitor_running,
            'watchdog_interval': self.watchdog_interval,
            'workers': self.worker_pool.size,
            'bypass_enabled': self.fetch_client.bypass_enabled,
            'ingest_dir': self.ingest_sink.ingest_dir,
            'queue_statistics': self.get_statistics(),
        }

    # ============================================================================
    # MONITORING (timeout watchdog + retention)
    # ============================================================================

    def start_monitoring(self):
        """Start the watchdog thread."""
        if self.monitor_running:
            logger.debug("Watchdog thread already running")
            return

        logger.debug("Starting watchdog thread...")
        self._monitor_stop.clear()
        self.monitor_running = True
        self.monitor_thread = threading.Thread(
            target=self._monitor_loop,
            name="DownloadWatchdog",
            daemon=True
        )
        self.monitor_thread.start()

    def stop_monitoring(self):
        """Stop the watchdog thread."""
        logger.debug("Stopping watchdog thread...")
        self.monitor_running = False
        self._monitor_stop.set()
        if self.monitor_thread and self.monitor_thread is not threading.current_thread():
            self.monitor_thread.join(timeout=5)
        self.monitor_thread = None

    def _monitor_loop(self):
        logger.debug("Watchdog thread started")

        while not self._monitor_stop.wait(self.watchdog_interval):
            try:
                self.run_watchdog_scan()
            except Exception:
                logger.exception("Error in watchdog loop")

        logger.debug("Watchdog thread stopped")

    def run_watchdog_scan(self, now=None) -> Dict[str, List[str]]:
        """
        One watchdog pass: time out overdue jobs, evict expired ones.

        Returns:
            {'timed_out': [...ids], 'evicted': [...ids]}
        """
        now = now or self.store.now()
        timeout = self.settings.job_timeout
        timed_out: List[str] = []

        for job in self.store.overdue_jobs(timeout, now):
            failed = self.store.force_fail(
                job.id,
                FailureReason.TIMEOUT,
                f"Job exceeded timeout of {timeout:g}s",
            )
            if failed is not None:
                timed_out.append(job.id)

        if timed_out:
            logger.warning(f"Timed out {len(timed_out)} job(s): {', '.join(timed_out)}")

        evicted = self.store.evict_expired(now)
        return {'timed_out': timed_out, 'evicted': evicted}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail_pending_jobs(self) -> int:
        failed = 0
        for job in self.store.active_jobs():
            if job.status not in RUNNABLE_STATUSES:
                continue
            if self.store.transition(job.id, job.status, JobStatus.FAILED,
                                     reason=FailureReason.SHUTDOWN,
                                     error_message="Orchestrator shut down before the job ran"):
                failed += 1
        return failed

    @staticmethod
    def _coerce_resource(resource_ref: Union[ResourceRef, Mapping[str, Any]]) -> ResourceRef:
        if isinstance(resource_ref, ResourceRef):
            return resource_ref
        if isinstance(resource_ref, Mapping):
            fields = {key: resource_ref.get(key) for key in
                      ('book_id', 'download_urls', 'title', 'author', 'format', 'size')
                      if resource_ref.get(key) is not None}
            return ResourceRef(**{'book_id': '', **fields})
        raise TypeError(f"Expected ResourceRef or mapping, got {type(resource_ref).__name__}")

    def __enter__(self) -> 'DownloadOrchestrator':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
