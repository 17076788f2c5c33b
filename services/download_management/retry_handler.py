"""
Retry Handler
=============

Decides whether a failed fetch is retried and after how long:
- Exponential backoff, capped at a maximum delay
- Bounded by a maximum number of fetch attempts per job
- Rate limits honour the server's Retry-After hint
- Fatal, not-found and resolution failures never retry
"""

import math
import random
from typing import Callable, Optional

from utils.logger import get_module_logger

from .models import FailureReason, FetchFailureKind, GiveUp, RetryAfter, RetryDecision

logger = get_module_logger("DownloadManagement.RetryHandler")


class RetryPolicy:
    """
    Stateless retry decisions for fetch failures.

    Backoff for attempt ``n`` (1-based) is ``base_delay * 2 ** (n - 1)``,
    capped at ``max_delay``. ``jitter`` adds up to that fraction of the
    delay on top, to keep retries of simultaneous jobs apart.
    """

    # Failure kinds that can never succeed on a later attempt
    NO_RETRY_KINDS = {
        FetchFailureKind.FATAL: FailureReason.FATAL,
        FetchFailureKind.NOT_FOUND: FailureReason.NOT_FOUND,
        FetchFailureKind.RESOLUTION_ERROR: FailureReason.RESOLUTION,
    }

    # Upper bound for server supplied Retry-After hints
    MAX_RETRY_AFTER = 24 * 3600.0

    def __init__(self, max_attempts: int = 5, base_delay: float = 2.0, max_delay: float = 300.0,
                 jitter: float = 0.0, random_source: Callable[[], float] = random.random):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("retry delays must not be negative")
        self.logger = logger
        self.max_attempts = int(max_attempts)
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.jitter = max(0.0, float(jitter))
        self._random = random_source

    def backoff_delay(self, attempt_count: int) -> float:
        """Delay before the attempt following ``attempt_count`` attempts."""
        exponent = max(0, attempt_count - 1)
        # Cap the exponent so huge attempt counts don't overflow
        delay = min(self.base_delay * (2 ** min(exponent, 32)), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * self._random()
        return delay

    def decide(self, kind: FetchFailureKind, attempt_count: int,
               retry_after: Optional[float] = None) -> RetryDecision:
        """
        Decide what happens after a failed fetch attempt.

        Args:
            kind: Failure kind reported by the fetch client
            attempt_count: Attempts made so far, including the failed one
            retry_after: Server supplied delay hint (rate limits only)

        Returns:
            RetryAfter(delay) or GiveUp(reason)
        """
        if kind in self.NO_RETRY_KINDS:
            return GiveUp(self.NO_RETRY_KINDS[kind], f"{kind.value} failures are not retried")

        if kind not in (FetchFailureKind.RATE_LIMITED, FetchFailureKind.BYPASS_REQUIRED,
                        FetchFailureKind.TRANSIENT):
            raise ValueError(f"Unhandled fetch failure kind: {kind!r}")

        if attempt_count >= self.max_attempts:
            self.logger.debug(
                "Giving up after %s/%s attempts (%s)", attempt_count, self.max_attempts, kind.value
            )
            return GiveUp(
                FailureReason.RETRIES_EXHAUSTED,
                f"Exceeded max attempts ({attempt_count}/{self.max_attempts})",
            )

        if kind is FetchFailureKind.RATE_LIMITED and retry_after is not None:
            hint = float(retry_after)
            if not math.isnan(hint):
                return RetryAfter(min(max(0.0, hint), self.MAX_RETRY_AFTER))
            self.logger.debug("Ignoring unusable Retry-After hint %r", retry_after)

        return RetryAfter(self.backoff_delay(attempt_count))
