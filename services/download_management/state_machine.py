"""
State Machine
=============

Validates download job state transitions.

Valid state flow:
QUEUED → DOWNLOADING → COMPLETED
              ↓    ↑
           RETRYING (deferred re-queue after backoff)
              ↓
   DOWNLOADING → FAILED (give up / fatal fetch failure)
   DOWNLOADING → ERROR  (ingest failure after a successful fetch)

Any non-terminal state may be forced to FAILED by the timeout watchdog (and
by shutdown for jobs that never reached a worker again).
"""

import logging
from typing import Dict, FrozenSet, Optional

from .models import FailureReason, JobStatus, TERMINAL_STATUSES

logger = logging.getLogger("DownloadManagement.StateMachine")


class StateMachine:
    """
    Enforces valid state transitions for the job lifecycle.

    Terminal states (COMPLETED, FAILED, ERROR) have no outgoing transitions;
    jobs only leave them through store eviction.
    """

    ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
        JobStatus.QUEUED: frozenset({JobStatus.DOWNLOADING, JobStatus.FAILED}),
        JobStatus.DOWNLOADING: frozenset({
            JobStatus.COMPLETED, JobStatus.RETRYING, JobStatus.FAILED, JobStatus.ERROR,
        }),
        JobStatus.RETRYING: frozenset({JobStatus.DOWNLOADING, JobStatus.FAILED}),
        JobStatus.COMPLETED: frozenset(),
        JobStatus.FAILED: frozenset(),
        JobStatus.ERROR: frozenset(),
    }

    # Reasons that may force QUEUED/RETRYING straight to FAILED
    FORCED_REASONS = frozenset({FailureReason.TIMEOUT, FailureReason.SHUTDOWN})

    def is_valid_transition(self, current: JobStatus, new: JobStatus,
                            reason: Optional[FailureReason] = None) -> bool:
        """
        Check if state transition is valid.

        Args:
            current: Current job status
            new: Target status
            reason: Failure reason accompanying a FAILED/ERROR target

        Returns:
            True if transition is allowed
        """
        allowed = self.ALLOWED_TRANSITIONS.get(current)
        if allowed is None:
            logger.warning(f"Unknown current status: {current}")
            return False
        if new not in allowed:
            return False

        if new is JobStatus.FAILED:
            if reason is None:
                return False
            if current in (JobStatus.QUEUED, JobStatus.RETRYING):
                return reason in self.FORCED_REASONS
            return True
        if new is JobStatus.ERROR:
            return reason is FailureReason.INGEST
        return True

    def is_terminal(self, status: JobStatus) -> bool:
        return status in TERMINAL_STATUSES

    def can_force_fail(self, status: JobStatus) -> bool:
        """Watchdog check: any non-terminal job may be forced to FAILED."""
        return status not in TERMINAL_STATUSES

    def get_allowed_transitions(self, current: JobStatus) -> FrozenSet[JobStatus]:
        return self.ALLOWED_TRANSITIONS.get(current, frozenset())
