"""
Module Name: models.py
Description:
    Value types shared by the download orchestrator: job snapshots, resource
    references handed over by the catalog resolver, and fetch outcomes.

Location:
    /services/download_management/models.py

"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .errors import InvalidResourceError


class JobStatus(Enum):
    """Lifecycle states of a download job."""
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ERROR})


class FailureReason(Enum):
    """Why a job ended in FAILED or ERROR."""
    TIMEOUT = "timeout"
    FATAL = "fatal"
    NOT_FOUND = "not_found"
    RESOLUTION = "resolution"
    RETRIES_EXHAUSTED = "retries_exhausted"
    SHUTDOWN = "shutdown"
    INGEST = "ingest"


class FetchFailureKind(Enum):
    """Closed set of fetch failure kinds."""
    RESOLUTION_ERROR = "resolution_error"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BYPASS_REQUIRED = "bypass_required"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class ResourceRef:
    """
    What to fetch, as produced by the catalog resolver.

    Only ``book_id`` matters for identity: two references with the same
    ``book_id`` describe the same book and deduplicate to one active job and
    one ingested file.
    """

    book_id: str
    download_urls: Tuple[str, ...] = ()
    title: Optional[str] = None
    author: Optional[str] = None
    format: str = "epub"
    size: Optional[str] = None

    def __post_init__(self):
        book_id = (self.book_id or "").strip() if isinstance(self.book_id, str) else ""
        if not book_id:
            raise InvalidResourceError("Resource reference requires a non-empty book_id")
        object.__setattr__(self, "book_id", book_id)
        # Accept a single URL or any iterable of URLs but store an immutable tuple
        urls = self.download_urls or ()
        if isinstance(urls, str):
            urls = (urls,)
        object.__setattr__(self, "download_urls", tuple(urls))
        fmt = (self.format or "epub").strip().lstrip(".").lower()
        object.__setattr__(self, "format", fmt or "epub")

    @property
    def identity(self) -> str:
        return self.book_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "book_id": self.book_id,
            "download_urls": list(self.download_urls),
            "title": self.title,
            "author": self.author,
            "format": self.format,
            "size": self.size,
        }


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a job as held by the JobStore."""

    id: str
    resource_ref: ResourceRef
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    attempt_count: int = 0
    reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    artifact_path: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    use_bypass: bool = False
    last_failure: Optional[FetchFailureKind] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for status endpoints."""
        return {
            "id": self.id,
            "book_id": self.resource_ref.book_id,
            "title": self.resource_ref.title,
            "author": self.resource_ref.author,
            "format": self.resource_ref.format,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error_message": self.error_message,
            "attempt_count": self.attempt_count,
            "artifact_path": self.artifact_path,
            "use_bypass": self.use_bypass,
            "last_failure": self.last_failure.value if self.last_failure else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class FetchSuccess:
    content: bytes
    url: str
    via_bypass: bool = False
    content_type: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class FetchFailure:
    kind: FetchFailureKind
    message: str = ""
    url: Optional[str] = None
    retry_after: Optional[float] = None
    via_bypass: bool = False

    ok = False


FetchResult = Union[FetchSuccess, FetchFailure]


@dataclass(frozen=True)
class RetryAfter:
    """Retry the job once ``delay`` seconds have elapsed."""
    delay: float


@dataclass(frozen=True)
class GiveUp:
    """Stop retrying; the job fails with ``reason``."""
    reason: FailureReason
    detail: str = field(default="")


RetryDecision = Union[RetryAfter, GiveUp]
