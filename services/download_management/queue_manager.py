"""
Queue Manager
=============

Handles the in-memory work queue:
- FIFO queue of job ids drained by the worker pool
- Delay-aware retry scheduler that re-queues jobs once their backoff elapses
- Queue statistics
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from utils.logger import get_module_logger

logger = get_module_logger("DownloadManagement.QueueManager")


class WorkQueue:
    """
    Thread-safe FIFO of job ids.

    ``get`` blocks until an item is available, the timeout elapses, or the
    queue is closed. A closed queue hands out nothing more.
    """

    def __init__(self):
        self._items: Deque[str] = deque()
        self._condition = threading.Condition()
        self._closed = False

    def put(self, job_id: str) -> bool:
        """Append a job id; returns False once the queue is closed."""
        with self._condition:
            if self._closed:
                return False
            self._items.append(job_id)
            self._condition.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Pop the oldest job id, or None on timeout/close."""
        with self._condition:
            if timeout is None:
                while not self._items and not self._closed:
                    self._condition.wait()
            else:
                deadline = time.monotonic() + timeout
                while not self._items and not self._closed:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._condition.wait(remaining)

            if self._closed:
                return None
            return self._items.popleft()

    def close(self) -> List[str]:
        """Stop handing out work and return the ids still queued."""
        with self._condition:
            self._closed = True
            pending = list(self._items)
            self._items.clear()
            self._condition.notify_all()
        return pending

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def snapshot(self) -> List[str]:
        with self._condition:
            return list(self._items)

    def __len__(self) -> int:
        with self._condition:
            return len(self._items)


class RetryScheduler:
    """
    Holds jobs waiting out their retry backoff.

    A single background thread keeps a heap of ``(ready_at, seq, job_id)``
    and appends each job to the work queue when it becomes due, so workers
    never sleep through a backoff. ``seq`` keeps equal deadlines in
    scheduling order.
    """

    def __init__(self, work_queue: WorkQueue):
        self.logger = logger
        self._work_queue = work_queue
        self._heap: List[Tuple[float, int, str]] = []
        self._counter = itertools.count()
        self._condition = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self):
        with self._condition:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(target=self._run, name="RetryScheduler", daemon=True)
        self._thread.start()
        self.logger.debug("Retry scheduler started")

    def schedule(self, job_id: str, delay: float) -> bool:
        """Re-queue ``job_id`` after ``delay`` seconds; False once stopped."""
        ready_at = time.monotonic() + max(0.0, delay)
        with self._condition:
            if not self._running:
                return False
            heapq.heappush(self._heap, (ready_at, next(self._counter), job_id))
            self._condition.notify()
        self.logger.debug(f"Job {job_id} scheduled for retry in {delay:.2f}s")
        return True

    def stop(self, timeout: Optional[float] = 5) -> List[str]:
        """Stop the scheduler and return the ids that were still waiting."""
        with self._condition:
            self._running = False
            pending = [job_id for _ready, _seq, job_id in sorted(self._heap)]
            self._heap.clear()
            self._condition.notify_all()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        return pending

    def pending_count(self) -> int:
        with self._condition:
            return len(self._heap)

    def _run(self):
        while True:
            due: List[str] = []
            with self._condition:
                if not self._running:
                    return
                now = time.monotonic()
                while self._heap and self._heap[0][0] <= now:
                    due.append(heapq.heappop(self._heap)[2])
                if not due:
                    wait = self._heap[0][0] - now if self._heap else None
                    self._condition.wait(wait)
                    continue

            for job_id in due:
                if not self._work_queue.put(job_id):
                    self.logger.debug(f"Work queue closed; dropping retry of job {job_id}")


def queue_statistics(work_queue: WorkQueue, scheduler: RetryScheduler) -> Dict[str, int]:
    """Sizes of the ready queue and the retry backlog."""
    return {
        'ready': len(work_queue),
        'waiting_retry': scheduler.pending_count(),
    }
