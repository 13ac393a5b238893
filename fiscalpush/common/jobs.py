"""Durable background job queue backed by the service database.

Jobs are enqueued inside the caller's transaction (so a status change and the
work it triggers commit together), claimed with `FOR UPDATE SKIP LOCKED` by
any number of workers, retried with per-kind backoff, and handed to the
kind's failure hook once the attempt budget is spent.

An optional `unique_key` collapses duplicate enqueues: while one job with the
key is pending or running, further enqueues with the same key are no-ops.
"""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError

from fiscalpush.common.db import as_utc, utcnow
from fiscalpush.common.logging import logger
from fiscalpush.common.metrics import jobs_oldest_pending_age_seconds, jobs_pending_total, jobs_processed_total
from fiscalpush.common.models import ACTIVE_JOB_STATUSES, BackgroundJob


class RetryableJobError(Exception):
    """Raised by a handler to ask for another attempt."""


class NonRetryableJobError(Exception):
    """Raised by a handler when further attempts cannot succeed."""


class JobHandler:
    """Base class for one job kind.

    Subclasses set `kind`, the attempt budget and backoff schedule, and
    implement `handle`. `failed` runs once after the final attempt fails.
    """

    kind: str = ""
    max_attempts: int = 3
    backoff_seconds: tuple[int, ...] = (60,)

    @classmethod
    def unique_key(cls, payload: dict) -> str | None:
        return None

    @classmethod
    def enqueue(cls, db, payload: dict, delay_seconds: int = 0, now: datetime | None = None) -> BackgroundJob | None:
        return enqueue_job(
            db,
            cls.kind,
            payload,
            unique_key=cls.unique_key(payload),
            delay_seconds=delay_seconds,
            max_attempts=cls.max_attempts,
            backoff_seconds=cls.backoff_seconds,
            now=now,
        )

    def handle(self, payload: dict) -> None:
        raise NotImplementedError

    def failed(self, payload: dict, error: str) -> None:
        return None


def _active_job_exists(db, unique_key: str) -> bool:
    return (
        db.execute(
            select(BackgroundJob.id).where(
                BackgroundJob.unique_key == unique_key,
                BackgroundJob.status.in_(ACTIVE_JOB_STATUSES),
            )
        ).first()
        is not None
    )


def enqueue_job(
    db,
    kind: str,
    payload: dict,
    unique_key: str | None = None,
    delay_seconds: int = 0,
    max_attempts: int = 3,
    backoff_seconds: tuple[int, ...] = (60,),
    now: datetime | None = None,
) -> BackgroundJob | None:
    """Add one job to the caller's transaction; `None` when collapsed."""

    now = now or utcnow()
    if unique_key and _active_job_exists(db, unique_key):
        logger.info("job enqueue collapsed kind=%s unique_key=%s", kind, unique_key)
        return None
    job = BackgroundJob(
        kind=kind,
        payload=payload,
        unique_key=unique_key,
        status="PENDING",
        attempts=0,
        max_attempts=max_attempts,
        backoff_seconds=list(backoff_seconds),
        available_at=now + timedelta(seconds=delay_seconds),
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        # A concurrent enqueue won the partial unique index.
        logger.info("job enqueue collapsed kind=%s unique_key=%s", kind, unique_key)
        return None
    logger.info(
        "job enqueued kind=%s job_id=%s unique_key=%s delay_s=%s",
        kind,
        job.id,
        unique_key,
        delay_seconds,
    )
    return job


def claim_job_batch(
    db,
    limit: int = 20,
    processing_timeout_seconds: int = 300,
    now: datetime | None = None,
) -> list[dict]:
    """Claim due pending jobs plus stale in-flight ones for this worker."""

    now = now or utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    jobs = (
        db.execute(
            select(BackgroundJob)
            .where(
                or_(
                    and_(BackgroundJob.status == "PENDING", BackgroundJob.available_at <= now),
                    and_(
                        BackgroundJob.status == "PROCESSING",
                        BackgroundJob.locked_at.is_not(None),
                        BackgroundJob.locked_at < stale_before,
                    ),
                )
            )
            .order_by(BackgroundJob.available_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    claimed = []
    for job in jobs:
        job.status = "PROCESSING"
        job.locked_at = now
        job.attempts += 1
        claimed.append(
            {
                "id": job.id,
                "kind": job.kind,
                "payload": dict(job.payload or {}),
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "backoff_seconds": list(job.backoff_seconds or []),
            }
        )
    return claimed


def mark_job_done(db, job_id: str) -> None:
    job = db.get(BackgroundJob, job_id)
    if job is not None and job.status == "PROCESSING":
        job.status = "DONE"
        job.locked_at = None
        job.last_error = None


def reschedule_job(db, job_id: str, error: str, delay_seconds: int, now: datetime | None = None) -> None:
    """Return a claimed job to `PENDING` after its backoff delay."""

    now = now or utcnow()
    job = db.get(BackgroundJob, job_id)
    if job is not None and job.status == "PROCESSING":
        job.status = "PENDING"
        job.locked_at = None
        job.last_error = error
        job.available_at = now + timedelta(seconds=delay_seconds)


def mark_job_failed(db, job_id: str, error: str) -> None:
    job = db.get(BackgroundJob, job_id)
    if job is not None:
        job.status = "FAILED"
        job.locked_at = None
        job.last_error = error


def backoff_for_attempt(backoff_seconds: list[int], attempt: int) -> int:
    if not backoff_seconds:
        return 60
    return int(backoff_seconds[min(attempt, len(backoff_seconds)) - 1])


def update_job_backlog_metrics(db, service_name: str, now: datetime | None = None) -> None:
    """Update service-level gauges for pending job depth and oldest age."""

    now = now or utcnow()
    pending_count = db.execute(
        select(func.count()).select_from(BackgroundJob).where(BackgroundJob.status.in_(ACTIVE_JOB_STATUSES))
    ).scalar_one()
    oldest_pending = as_utc(
        db.execute(
            select(func.min(BackgroundJob.created_at)).where(BackgroundJob.status.in_(ACTIVE_JOB_STATUSES))
        ).scalar_one()
    )
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    jobs_pending_total.labels(service=service_name).set(float(pending_count))
    jobs_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class JobRunner:
    """Claims and executes jobs for the registered handler kinds."""

    def __init__(
        self,
        session_factory,
        handlers: list[JobHandler],
        service_name: str,
        batch_size: int = 20,
        processing_timeout_seconds: int = 300,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.session_factory = session_factory
        self.handlers = {handler.kind: handler for handler in handlers}
        self.service_name = service_name
        self.batch_size = batch_size
        self.processing_timeout_seconds = processing_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def run_once(self, now: datetime | None = None) -> int:
        """Claim one batch and run it to completion; returns jobs processed."""

        with self.session_factory() as db:
            jobs = claim_job_batch(
                db,
                limit=self.batch_size,
                processing_timeout_seconds=self.processing_timeout_seconds,
                now=now,
            )
            db.commit()
        for job in jobs:
            self._execute(job, now)
        with self.session_factory() as db:
            update_job_backlog_metrics(db, self.service_name, now)
        return len(jobs)

    def _execute(self, job: dict, now: datetime | None) -> None:
        kind = job["kind"]
        handler = self.handlers.get(kind)
        if handler is None:
            logger.error("job has no handler kind=%s job_id=%s", kind, job["id"])
            self._finish_failed(job, None, f"no handler registered for {kind}")
            return
        if job["attempts"] > job["max_attempts"]:
            self._finish_failed(job, handler, "attempt budget exhausted while processing")
            return
        try:
            handler.handle(job["payload"])
        except NonRetryableJobError as exc:
            self._finish_failed(job, handler, str(exc))
        except Exception as exc:
            if job["attempts"] >= job["max_attempts"]:
                self._finish_failed(job, handler, str(exc))
                return
            delay = backoff_for_attempt(job["backoff_seconds"], job["attempts"])
            logger.warning(
                "job attempt failed kind=%s job_id=%s attempt=%s backoff_s=%s error=%s",
                kind,
                job["id"],
                job["attempts"],
                delay,
                exc,
            )
            jobs_processed_total.labels(service=self.service_name, kind=kind, result="retry").inc()
            with self.session_factory() as db:
                reschedule_job(db, job["id"], str(exc), delay, now=now)
                db.commit()
        else:
            jobs_processed_total.labels(service=self.service_name, kind=kind, result="done").inc()
            with self.session_factory() as db:
                mark_job_done(db, job["id"])
                db.commit()

    def _finish_failed(self, job: dict, handler: JobHandler | None, error: str) -> None:
        logger.error(
            "job failed permanently kind=%s job_id=%s attempts=%s error=%s",
            job["kind"],
            job["id"],
            job["attempts"],
            error,
        )
        jobs_processed_total.labels(service=self.service_name, kind=job["kind"], result="failed").inc()
        with self.session_factory() as db:
            mark_job_failed(db, job["id"], error)
            db.commit()
        if handler is not None:
            try:
                handler.failed(job["payload"], error)
            except Exception:
                logger.exception("job failure hook raised kind=%s job_id=%s", job["kind"], job["id"])

    async def run_forever(self) -> None:
        """Poll for due jobs until cancelled."""

        while True:
            try:
                processed = await asyncio.to_thread(self.run_once)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("job runner loop error: %s", exc)
                processed = 0
            if not processed:
                await asyncio.sleep(self.poll_interval_seconds)
