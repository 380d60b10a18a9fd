"""Background maintenance jobs run by the APScheduler instance holding the lock."""
from __future__ import annotations

from hedgepay import db
from hedgepay.config import get_settings
from hedgepay.services.jobs import requeue_stale_jobs
from hedgepay.services.scheduler_lock import refresh_scheduler_lock


def requeue_stale_jobs_once() -> int:
    """Return jobs stranded in ``processing`` by a dead worker to the queue."""

    db_factory = db.SessionLocal
    if db_factory is None:  # engine not initialised yet
        return 0

    settings = get_settings()
    with db_factory() as session:
        return requeue_stale_jobs(session, older_than_seconds=settings.STALE_JOB_TIMEOUT_SECONDS)


def refresh_scheduler_lease() -> None:
    db_factory = db.SessionLocal
    if db_factory is None:
        return
    with db_factory() as session:
        refresh_scheduler_lock(session)


__all__ = ["refresh_scheduler_lease", "requeue_stale_jobs_once"]
