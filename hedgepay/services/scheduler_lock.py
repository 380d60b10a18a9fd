"""DB-backed lease ensuring maintenance jobs run on a single instance."""
from __future__ import annotations

import os
import socket
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hedgepay.models import SchedulerLock
from hedgepay.utils.time import as_utc, utcnow

LOCK_NAME = "default"
LOCK_TTL_SECONDS = 300


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _locked(db: Session, name: str) -> SchedulerLock | None:
    stmt = (
        select(SchedulerLock)
        .where(SchedulerLock.name == name)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def try_acquire_scheduler_lock(
    db: Session,
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    now: datetime | None = None,
) -> bool:
    """Take the lease when free, expired, or already ours; ``False`` otherwise."""

    owner = _owner_id()
    now = now or utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    lock = _locked(db, name)
    if lock is None:
        try:
            with db.begin_nested():
                db.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
        except IntegrityError:
            db.commit()
            return False
        db.commit()
        return True

    expires_at = as_utc(lock.expires_at)
    if lock.owner == owner:
        lock.expires_at = expires
    elif expires_at is None or expires_at <= now:
        lock.owner = owner
        lock.acquired_at = now
        lock.expires_at = expires
    else:
        db.commit()
        return False
    db.commit()
    return True


def refresh_scheduler_lock(db: Session, name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS) -> bool:
    """Extend the lease when this instance holds it."""

    lock = _locked(db, name)
    if lock is None or lock.owner != _owner_id():
        db.commit()
        return False
    lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
    db.commit()
    return True


def release_scheduler_lock(db: Session, name: str = LOCK_NAME) -> None:
    """Drop the lease if this instance holds it."""

    lock = _locked(db, name)
    if lock is not None and lock.owner == _owner_id():
        db.delete(lock)
    db.commit()


def describe_scheduler_lock(db: Session, name: str = LOCK_NAME) -> dict[str, object]:
    """Return a lightweight description of the current lease for the health endpoint."""

    lock = db.scalars(
        select(SchedulerLock).where(SchedulerLock.name == name).execution_options(populate_existing=True)
    ).first()
    if lock is None:
        return {"status": "none", "owner": None, "present": False}

    now = utcnow()
    acquired_at = as_utc(lock.acquired_at)
    expires_at = as_utc(lock.expires_at)
    expires_in = (expires_at - now).total_seconds() if expires_at else None
    return {
        "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
        "owner": lock.owner,
        "present": True,
        "age_seconds": (now - acquired_at).total_seconds() if acquired_at else None,
        "expires_in_seconds": expires_in,
        "stale": expires_in is not None and expires_in < 0,
    }


__all__ = [
    "describe_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "try_acquire_scheduler_lock",
]
