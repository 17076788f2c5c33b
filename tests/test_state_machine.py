import pytest

from services.download_management.models import FailureReason, JobStatus
from services.download_management.state_machine import StateMachine


@pytest.fixture
def machine():
    return StateMachine()


@pytest.mark.parametrize(
    "current,new",
    [
        (JobStatus.QUEUED, JobStatus.DOWNLOADING),
        (JobStatus.DOWNLOADING, JobStatus.COMPLETED),
        (JobStatus.DOWNLOADING, JobStatus.RETRYING),
        (JobStatus.RETRYING, JobStatus.DOWNLOADING),
    ],
)
def test_forward_transitions_allowed(machine, current, new):
    assert machine.is_valid_transition(current, new)


@pytest.mark.parametrize(
    "current,new",
    [
        (JobStatus.QUEUED, JobStatus.COMPLETED),
        (JobStatus.QUEUED, JobStatus.RETRYING),
        (JobStatus.RETRYING, JobStatus.COMPLETED),
        (JobStatus.COMPLETED, JobStatus.DOWNLOADING),
        (JobStatus.FAILED, JobStatus.QUEUED),
        (JobStatus.ERROR, JobStatus.RETRYING),
    ],
)
def test_invalid_transitions_rejected(machine, current, new):
    assert not machine.is_valid_transition(current, new, FailureReason.TIMEOUT)


def test_failed_requires_reason(machine):
    assert not machine.is_valid_transition(JobStatus.DOWNLOADING, JobStatus.FAILED)
    assert machine.is_valid_transition(JobStatus.DOWNLOADING, JobStatus.FAILED, FailureReason.FATAL)


def test_waiting_jobs_only_fail_on_timeout_or_shutdown(machine):
    for status in (JobStatus.QUEUED, JobStatus.RETRYING):
        assert machine.is_valid_transition(status, JobStatus.FAILED, FailureReason.TIMEOUT)
        assert machine.is_valid_transition(status, JobStatus.FAILED, FailureReason.SHUTDOWN)
        assert not machine.is_valid_transition(status, JobStatus.FAILED, FailureReason.FATAL)


def test_error_only_for_ingest_failures(machine):
    assert machine.is_valid_transition(JobStatus.DOWNLOADING, JobStatus.ERROR, FailureReason.INGEST)
    assert not machine.is_valid_transition(JobStatus.DOWNLOADING, JobStatus.ERROR, FailureReason.FATAL)
    assert not machine.is_valid_transition(JobStatus.QUEUED, JobStatus.ERROR, FailureReason.INGEST)


def test_terminal_states_have_no_exits(machine):
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ERROR):
        assert machine.is_terminal(status)
        assert not machine.can_force_fail(status)
        assert machine.get_allowed_transitions(status) == frozenset()
    assert machine.can_force_fail(JobStatus.DOWNLOADING)
