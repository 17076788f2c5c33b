"""
Error types raised by the download orchestrator.

Expected fetch problems are reported as FetchFailure values, not exceptions;
the classes below cover caller misuse and ingest failures.
"""


class DownloadManagementError(Exception):
    """Base class for download orchestration errors."""


class InvalidResourceError(DownloadManagementError, ValueError):
    """A resource reference could not be constructed (missing identity)."""


class JobNotFoundError(DownloadManagementError, KeyError):
    """No job with the requested id exists (never created or already evicted)."""

    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job {self.job_id} not found"


class OrchestratorShutdownError(DownloadManagementError, RuntimeError):
    """The orchestrator no longer accepts new jobs."""


class IngestError(DownloadManagementError):
    """Writing or publishing an artifact into the ingest directory failed."""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class ArtifactNotAvailableError(DownloadManagementError):
    """The job has no published artifact (not completed, or the file is gone)."""
