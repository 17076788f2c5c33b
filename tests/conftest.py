import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from services.download_management.download_management_service import DownloadOrchestrator
from services.download_management.fetch_client import BaseFetchClient
from services.download_management.models import FetchSuccess, ResourceRef
from services.download_management.settings import DownloadSettings


class FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


class ScriptedFetchClient(BaseFetchClient):
    """Replays scripted results in order; the last one repeats.

    A result may be a FetchResult, an exception to raise, or a callable
    ``(resource_ref, via_bypass) -> FetchResult``.
    """

    def __init__(self, results=None, bypass_enabled=False, delay=0.0, gate=None):
        self.results = list(results or [FetchSuccess(b"book-bytes", "https://files.example.org/book")])
        self.bypass_enabled = bypass_enabled
        self.delay = delay
        self.gate = gate
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def fetch(self, resource_ref, via_bypass=False):
        with self._lock:
            self.calls.append((resource_ref.book_id, via_bypass))
            result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if self.delay:
                time.sleep(self.delay)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return result(resource_ref, via_bypass)
            return result
        finally:
            with self._lock:
                self.in_flight -= 1


def _wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scripted_client():
    return ScriptedFetchClient


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def make_ref():
    def _make(book_id="0a1b2c3d4e5f", **kwargs):
        kwargs.setdefault("download_urls", ("https://files.example.org/book.epub",))
        kwargs.setdefault("title", "The Left Hand of Darkness")
        return ResourceRef(book_id, **kwargs)

    return _make


@pytest.fixture
def ingest_dir(tmp_path):
    return tmp_path / "ingest"


@pytest.fixture
def make_orchestrator(ingest_dir):
    created = []

    def _make(fetch_client, **overrides):
        values = dict(
            max_concurrent_downloads=2,
            retry_base_delay=0.01,
            max_retry_delay=0.05,
            watchdog_interval=0.05,
            ingest_dir=str(ingest_dir),
        )
        values.update(overrides)
        orchestrator = DownloadOrchestrator(
            DownloadSettings(**values),
            fetch_client=fetch_client,
            worker_poll_interval=0.02,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        orchestrator.shutdown(timeout=5)
