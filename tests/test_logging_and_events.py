import logging

from loguru import logger as loguru_logger

from services.download_management.event_emitter import EventEmitter
from services.download_management.job_store import JobStore
from services.download_management.models import JobStatus
from utils.logger import get_module_logger, setup_logger
from utils.loguru_config import _standardize_name


def test_standardize_name():
    assert _standardize_name("DownloadManagement.JobStore") == "DownloadManagement.JobStore"
    assert _standardize_name("services/config") == "Services.Config"
    assert _standardize_name("") == "BookDownloader"


def test_module_loggers_are_routed_into_loguru():
    setup_logger(log_file=None, level="DEBUG", force=True)
    captured = []
    loguru_logger.add(lambda message: captured.append(message.record), level="DEBUG")
    try:
        get_module_logger("DownloadManagement.Test").info("hello from stdlib")
        loguru_logger.complete()
    finally:
        # Drop the sinks bound to this test's captured stdout
        loguru_logger.remove()
        logging.getLogger().handlers.clear()

    assert [record["message"] for record in captured] == ["hello from stdlib"]
    assert captured[0]["extra"]["logger_name"] == "DownloadManagement.Test"
    assert get_module_logger("DownloadManagement.Test").propagate is True


def test_event_emitter_fans_out_transitions(clock, make_ref):
    emitter = EventEmitter()
    store = JobStore(clock=clock)
    store.add_listener(emitter.on_transition)
    events = []
    unsubscribe = emitter.subscribe(lambda event, payload: events.append((event, payload["previous_status"])))

    job_id = store.create(make_ref())
    store.transition(job_id, JobStatus.QUEUED, JobStatus.DOWNLOADING, increment_attempt=True)
    unsubscribe()
    store.transition(job_id, JobStatus.DOWNLOADING, JobStatus.COMPLETED, artifact_path="/ingest/book.epub")

    assert events == [
        ("download:queued", None),
        ("download:started", "queued"),
        ("download:state_changed", "queued"),
    ]


def test_subscriber_errors_are_contained(clock, make_ref):
    emitter = EventEmitter()
    store = JobStore(clock=clock)
    store.add_listener(emitter.on_transition)
    received = []

    def broken(event, payload):
        raise RuntimeError("subscriber bug")

    emitter.subscribe(broken)
    emitter.subscribe(lambda event, payload: received.append(event))

    store.create(make_ref())

    assert received == ["download:queued"]
