"""
Download Management Module
==========================

Orchestrates book downloads from submission to the ingest directory.

Architecture:
- Orchestrator owns the job lifecycle and the timeout watchdog
- Helper modules handle specific concerns (store, state, retries, fetching, ingest)
- In-memory job store with the catalog book id as deduplication key
- Lifecycle events fan out through the event emitter
"""

from .download_management_service import DownloadOrchestrator
from .errors import (
    ArtifactNotAvailableError,
    DownloadManagementError,
    IngestError,
    InvalidResourceError,
    JobNotFoundError,
    OrchestratorShutdownError,
)
from .fetch_client import BaseFetchClient, HttpFetchClient
from .ingest_sink import IngestSink
from .models import (
    FailureReason,
    FetchFailure,
    FetchFailureKind,
    FetchSuccess,
    GiveUp,
    Job,
    JobStatus,
    ResourceRef,
    RetryAfter,
)
from .retry_handler import RetryPolicy
from .settings import DownloadSettings

__all__ = [
    'DownloadOrchestrator',
    'DownloadSettings',

    # Components
    'BaseFetchClient',
    'HttpFetchClient',
    'IngestSink',
    'RetryPolicy',

    # Models
    'FailureReason',
    'FetchFailure',
    'FetchFailureKind',
    'FetchSuccess',
    'GiveUp',
    'Job',
    'JobStatus',
    'ResourceRef',
    'RetryAfter',

    # Errors
    'ArtifactNotAvailableError',
    'DownloadManagementError',
    'IngestError',
    'InvalidResourceError',
    'JobNotFoundError',
    'OrchestratorShutdownError',
]
