"""Durable job queue: unique keys, due times, backoff and failure hooks."""

from datetime import timedelta

from fiscalpush.common.db import as_utc
from fiscalpush.common.jobs import (
    JobHandler,
    JobRunner,
    NonRetryableJobError,
    RetryableJobError,
    backoff_for_attempt,
    enqueue_job,
)
from fiscalpush.common.models import BackgroundJob


class RecordingJob(JobHandler):
    kind = "test.recording"
    max_attempts = 3
    backoff_seconds = (30, 60, 120)

    def __init__(self, errors=()) -> None:
        self.errors = list(errors)
        self.calls = []
        self.failures = []

    @classmethod
    def unique_key(cls, payload: dict) -> str | None:
        return f"recording-{payload['id']}"

    def handle(self, payload: dict) -> None:
        self.calls.append(payload)
        if self.errors:
            raise self.errors.pop(0)

    def failed(self, payload: dict, error: str) -> None:
        self.failures.append((payload, error))


def _enqueue(session_factory, handler, payload, delay_seconds=0, now=None):
    with session_factory() as db:
        job = handler.enqueue(db, payload, delay_seconds=delay_seconds, now=now)
        db.commit()
    return job


def _job(session_factory, job_id):
    with session_factory() as db:
        return db.get(BackgroundJob, job_id)


def test_active_unique_key_collapses_enqueue(session_factory, clock):
    handler = RecordingJob()
    first = _enqueue(session_factory, handler, {"id": 1}, now=clock())

    assert _enqueue(session_factory, handler, {"id": 1}, now=clock()) is None
    assert _enqueue(session_factory, handler, {"id": 2}, now=clock()) is not None

    runner = JobRunner(session_factory, [handler], service_name="test")
    assert runner.run_once(now=clock()) == 2
    assert _job(session_factory, first.id).status == "DONE"
    # Finished jobs no longer block the key.
    assert _enqueue(session_factory, handler, {"id": 1}, now=clock()) is not None


def test_delayed_job_waits_until_due(session_factory, clock):
    handler = RecordingJob()
    _enqueue(session_factory, handler, {"id": 1}, delay_seconds=60, now=clock())
    runner = JobRunner(session_factory, [handler], service_name="test")

    assert runner.run_once(now=clock() + timedelta(seconds=59)) == 0
    assert runner.run_once(now=clock() + timedelta(seconds=61)) == 1
    assert handler.calls == [{"id": 1}]


def test_retryable_failure_reschedules_with_backoff(session_factory, clock):
    handler = RecordingJob(errors=[RetryableJobError("provider 503")])
    job = _enqueue(session_factory, handler, {"id": 1}, now=clock())
    runner = JobRunner(session_factory, [handler], service_name="test")

    runner.run_once(now=clock())

    stored = _job(session_factory, job.id)
    assert stored.status == "PENDING"
    assert stored.attempts == 1
    assert stored.last_error == "provider 503"
    assert as_utc(stored.available_at) == clock() + timedelta(seconds=30)

    assert runner.run_once(now=clock() + timedelta(seconds=10)) == 0
    assert runner.run_once(now=clock() + timedelta(seconds=31)) == 1
    assert _job(session_factory, job.id).status == "DONE"


def test_exhausted_job_fails_and_calls_hook_once(session_factory, clock):
    handler = RecordingJob(errors=[RuntimeError("boom")] * 3)
    job = _enqueue(session_factory, handler, {"id": 1}, now=clock())
    runner = JobRunner(session_factory, [handler], service_name="test")

    for offset in (0, 31, 92):
        runner.run_once(now=clock() + timedelta(seconds=offset))

    stored = _job(session_factory, job.id)
    assert stored.status == "FAILED"
    assert stored.attempts == 3
    assert handler.failures == [({"id": 1}, "boom")]
    assert runner.run_once(now=clock() + timedelta(days=1)) == 0


def test_non_retryable_error_fails_immediately(session_factory, clock):
    handler = RecordingJob(errors=[NonRetryableJobError("not configured")])
    job = _enqueue(session_factory, handler, {"id": 1}, now=clock())

    JobRunner(session_factory, [handler], service_name="test").run_once(now=clock())

    assert _job(session_factory, job.id).status == "FAILED"
    assert handler.failures == [({"id": 1}, "not configured")]


def test_job_without_handler_fails(session_factory, clock):
    with session_factory() as db:
        job = enqueue_job(db, "test.unknown", {"id": 1}, now=clock())
        db.commit()

    JobRunner(session_factory, [RecordingJob()], service_name="test").run_once(now=clock())

    stored = _job(session_factory, job.id)
    assert stored.status == "FAILED"
    assert "no handler" in stored.last_error


def test_stale_processing_job_is_reclaimed(session_factory, clock):
    """A worker that died mid-job leaves it PROCESSING; it is picked up again."""

    handler = RecordingJob()
    job = _enqueue(session_factory, handler, {"id": 1}, now=clock())
    with session_factory() as db:
        stored = db.get(BackgroundJob, job.id)
        stored.status = "PROCESSING"
        stored.attempts = 1
        stored.locked_at = clock()
        db.commit()
    runner = JobRunner(session_factory, [handler], service_name="test", processing_timeout_seconds=300)

    assert runner.run_once(now=clock() + timedelta(seconds=60)) == 0
    assert runner.run_once(now=clock() + timedelta(seconds=301)) == 1
    assert _job(session_factory, job.id).attempts == 2


def test_backoff_for_attempt():
    assert backoff_for_attempt([30, 60, 120], 1) == 30
    assert backoff_for_attempt([30, 60, 120], 3) == 120
    assert backoff_for_attempt([30, 60, 120], 9) == 120
    assert backoff_for_attempt([], 1) == 60
