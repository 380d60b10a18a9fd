"""Durable settlement job queue backed by the ``jobs`` table."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hedgepay.models import ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES, Job, JobStatus
from hedgepay.utils.time import utcnow

logger = logging.getLogger(__name__)


def _active_job_id(db: Session, payment_id: int) -> int | None:
    stmt = (
        select(Job.id)
        .where(Job.payment_id == payment_id, Job.status.in_(ACTIVE_JOB_STATUSES))
        .limit(1)
    )
    return db.scalar(stmt)


def get_job(db: Session, job_id: int) -> Job | None:
    """Return the job with fresh column values."""

    return db.get(Job, job_id, populate_existing=True)


def enqueue_job(db: Session, payment_id: int, *, now: datetime | None = None) -> Job | None:
    """Queue settlement work for ``payment_id`` unless a queued/processing job exists.

    Returns the new job, or ``None`` when the enqueue was skipped. The check is
    backed by the ``uq_jobs_active_payment`` partial unique index, so two
    concurrent enqueues cannot both succeed. The caller owns the commit.
    """

    if _active_job_id(db, payment_id) is not None:
        logger.info("Active job already present; enqueue skipped", extra={"payment_id": payment_id})
        return None

    job = Job(payment_id=payment_id, status=JobStatus.QUEUED, run_at=now or utcnow(), attempts=0)
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        if _active_job_id(db, payment_id) is None:
            raise
        logger.info("Concurrent enqueue won the race", extra={"payment_id": payment_id})
        return None
    return job


def claim_next_job(db: Session, worker_id: str, *, now: datetime | None = None) -> Job | None:
    """Claim the oldest eligible queued job for ``worker_id``.

    The candidate row is selected with ``FOR UPDATE SKIP LOCKED`` (ignored on
    SQLite) and flipped with a conditional update that only matches while the
    row is still queued, so two concurrent callers never both receive it.
    """

    now = now or utcnow()
    candidate_id = db.scalar(
        select(Job.id)
        .where(Job.status == JobStatus.QUEUED, Job.run_at <= now)
        .order_by(Job.run_at, Job.id)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    if candidate_id is None:
        db.commit()
        return None

    result = db.execute(
        update(Job)
        .where(Job.id == candidate_id, Job.status == JobStatus.QUEUED)
        .values(status=JobStatus.PROCESSING, locked_by=worker_id, locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.debug("Lost claim race", extra={"job_id": candidate_id, "worker_id": worker_id})
        return None

    job = get_job(db, candidate_id)
    logger.info(
        "Job claimed",
        extra={"job_id": candidate_id, "payment_id": job.payment_id if job else None, "worker_id": worker_id},
    )
    return job


def _owned_by(job_id: int, worker_id: str | None):
    """WHERE clause for a job ``worker_id`` may still act on."""

    if worker_id is None:
        return (Job.id == job_id, Job.status.in_(ACTIVE_JOB_STATUSES))
    # A reclaimed job belongs to its new worker; the old one must not touch it.
    return (Job.id == job_id, Job.status == JobStatus.PROCESSING, Job.locked_by == worker_id)


def finalize_job(
    db: Session,
    job_id: int,
    status: JobStatus,
    *,
    worker_id: str | None = None,
    commit: bool = True,
) -> bool:
    """Move a job to ``done`` or ``dead``; a no-op when it is already terminal.

    With ``worker_id`` the update only applies while that worker still holds
    the claim.
    """

    if status not in TERMINAL_JOB_STATUSES:
        raise ValueError(f"{status} is not a terminal job status")

    result = db.execute(
        update(Job)
        .where(*_owned_by(job_id, worker_id))
        .values(status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.commit()
    changed = result.rowcount == 1
    if changed:
        logger.info("Job finalized", extra={"job_id": job_id, "status": status.value})
    elif worker_id is not None:
        logger.warning("Finalize skipped; claim no longer held", extra={"job_id": job_id, "worker_id": worker_id})
    return changed


def retry_job(
    db: Session,
    job_id: int,
    attempts: int,
    delay_seconds: float,
    *,
    worker_id: str,
    now: datetime | None = None,
) -> bool:
    """Return a job ``worker_id`` still holds to the queue with ``run_at = now + delay``."""

    now = now or utcnow()
    result = db.execute(
        update(Job)
        .where(*_owned_by(job_id, worker_id))
        .values(
            status=JobStatus.QUEUED,
            attempts=attempts,
            run_at=now + timedelta(seconds=delay_seconds),
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning("Retry skipped; claim no longer held", extra={"job_id": job_id, "worker_id": worker_id})
        return False
    logger.info(
        "Job scheduled for retry",
        extra={"job_id": job_id, "attempts": attempts, "delay_seconds": delay_seconds},
    )
    return True


def requeue_stale_jobs(db: Session, *, older_than_seconds: int, now: datetime | None = None) -> int:
    """Release ``processing`` jobs whose claim is older than the lease.

    A worker that dies between claim and finalize leaves its job locked; this
    puts such jobs back in the queue so the payment still reaches a terminal state.
    """

    now = now or utcnow()
    cutoff = now - timedelta(seconds=older_than_seconds)
    result = db.execute(
        update(Job)
        .where(Job.status == JobStatus.PROCESSING, Job.locked_at.is_not(None), Job.locked_at < cutoff)
        .values(status=JobStatus.QUEUED, run_at=now, locked_by=None, locked_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Requeued stale jobs", extra={"count": result.rowcount, "cutoff": cutoff.isoformat()})
    return result.rowcount


__all__ = [
    "claim_next_job",
    "enqueue_job",
    "finalize_job",
    "get_job",
    "requeue_stale_jobs",
    "retry_job",
]
