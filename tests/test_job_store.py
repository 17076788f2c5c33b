from datetime import timedelta

import pytest

from services.download_management.errors import InvalidResourceError
from services.download_management.job_store import JobStore
from services.download_management.models import FailureReason, FetchFailureKind, JobStatus, ResourceRef


@pytest.fixture
def store(clock):
    return JobStore(retention_seconds=60, clock=clock)


def _complete(store, job_id):
    assert store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)
    assert store.transition(job_id, JobStatus.DOWNLOADING, JobStatus.COMPLETED, artifact_path="/ingest/x.epub")


def test_create_starts_queued_with_aware_timestamps(store, make_ref, clock):
    job_id = store.create(make_ref())
    job = store.get(job_id)

    assert job.status is JobStatus.QUEUED
    assert job.attempt_count == 0
    assert job.created_at == job.updated_at == clock()
    assert job.created_at.tzinfo is not None


def test_create_is_idempotent_for_active_book(store, make_ref):
    first = store.create(make_ref("abc"))
    second = store.create(make_ref("abc", download_urls=("https://mirror.example.org/abc",)))

    assert first == second
    assert len(store) == 1


def test_create_after_terminal_makes_new_job(store, make_ref):
    first = store.create(make_ref("abc"))
    _complete(store, first)

    second = store.create(make_ref("abc"))

    assert second != first
    assert store.get(second).status is JobStatus.QUEUED


def test_resource_ref_requires_book_id():
    with pytest.raises(InvalidResourceError):
        ResourceRef("  ")


def test_transition_is_compare_and_set(store, make_ref):
    job_id = store.create(make_ref())

    assert not store.transition(job_id, JobStatus.RETRYING, JobStatus.DOWNLOADING)
    assert store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)
    assert not store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)
    assert store.get(job_id).attempt_count == 1


def test_invalid_transition_rejected(store, make_ref):
    job_id = store.create(make_ref())

    assert not store.transition(job_id, JobStatus.QUEUED, JobStatus.COMPLETED)
    assert store.get(job_id).status is JobStatus.QUEUED


def test_unknown_job_transition_returns_false(store):
    assert not store.transition("missing", JobStatus.QUEUED, JobStatus.DOWNLOADING)
    assert store.get("missing") is None


def test_retrying_records_failure_details(store, make_ref, clock):
    job_id = store.create(make_ref())
    store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)
    clock.advance(5)
    ready = clock() + timedelta(seconds=2)

    assert store.transition(
        job_id, JobStatus.DOWNLOADING, JobStatus.RETRYING,
        error_message="HTTP 503", last_failure=FetchFailureKind.TRANSIENT,
        next_attempt_at=ready, use_bypass=True,
    )

    job = store.get(job_id)
    assert job.next_attempt_at == ready
    assert job.last_failure is FetchFailureKind.TRANSIENT
    assert job.use_bypass is True
    assert job.updated_at == clock()
    assert job.reason is None

    store.transition(job_id, JobStatus.RETRYING, JobStatus.DOWNLOADING, increment_attempt=True)
    job = store.get(job_id)
    assert job.attempt_count == 2
    assert job.next_attempt_at is None
    assert job.use_bypass is True


def test_force_fail_wins_over_any_active_state(store, make_ref):
    job_id = store.create(make_ref())
    store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)

    failed = store.force_fail(job_id, FailureReason.TIMEOUT, "too slow")

    assert failed.status is JobStatus.FAILED
    assert failed.reason is FailureReason.TIMEOUT
    # A stale worker can no longer complete the job
    assert not store.transition(job_id, JobStatus.DOWNLOADING, JobStatus.COMPLETED, artifact_path="/x")
    assert store.force_fail(job_id, FailureReason.TIMEOUT) is None


def test_force_fail_rejects_reasons_reserved_for_workers(store, make_ref):
    job_id = store.create(make_ref())

    with pytest.raises(ValueError):
        store.force_fail(job_id, FailureReason.FATAL)

    assert store.get(job_id).status is JobStatus.QUEUED
    assert store.force_fail(job_id, FailureReason.SHUTDOWN).reason is FailureReason.SHUTDOWN


def test_statistics_and_grouping(store, make_ref):
    done = store.create(make_ref("done"))
    _complete(store, done)
    store.create(make_ref("waiting"))

    stats = store.statistics()
    assert stats["completed"] == 1
    assert stats["queued"] == 1
    assert stats["total"] == 2
    assert stats["total_active"] == 1

    grouped = store.grouped_by_status()
    assert [job.id for job in grouped[JobStatus.COMPLETED]] == [done]


def test_overdue_jobs_only_reports_active(store, make_ref, clock):
    done = store.create(make_ref("done"))
    _complete(store, done)
    waiting = store.create(make_ref("waiting"))
    clock.advance(120)

    assert [job.id for job in store.overdue_jobs(60)] == [waiting]


def test_evict_expired_respects_retention(store, make_ref, clock):
    done = store.create(make_ref("done"))
    _complete(store, done)
    active = store.create(make_ref("active"))

    clock.advance(30)
    assert store.evict_expired() == []

    clock.advance(31)
    assert store.evict_expired() == [done]
    assert store.get(done) is None
    assert store.get(active) is not None


def test_retention_none_never_evicts(make_ref, clock):
    store = JobStore(retention_seconds=None, clock=clock)
    job_id = store.create(make_ref())
    _complete(store, job_id)
    clock.advance(10 ** 6)

    assert store.evict_expired() == []
    assert job_id in store


def test_listeners_run_outside_lock(store, make_ref):
    seen = []

    def listener(job, previous):
        # Reading the store from a listener must not deadlock
        seen.append((store.get(job.id).status, previous))

    store.add_listener(listener)
    job_id = store.create(make_ref())
    store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)

    assert seen == [(JobStatus.QUEUED, None), (JobStatus.DOWNLOADING, JobStatus.QUEUED)]


def test_listener_errors_do_not_break_transitions(store, make_ref):
    def broken(job, previous):
        raise RuntimeError("boom")

    store.add_listener(broken)
    job_id = store.create(make_ref())

    assert store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)
