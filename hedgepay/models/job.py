"""Settlement job queue model."""
import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _utcnow, value_enum


class JobStatus(str, enum.Enum):
    """Lifecycle of a settlement job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    DEAD = "dead"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)
TERMINAL_JOB_STATUSES = (JobStatus.DONE, JobStatus.DEAD)

_ACTIVE_PREDICATE = "status IN ('queued', 'processing')"


class Job(Base):
    """Deferred settlement work for exactly one payment."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_run_at", "status", "run_at"),
        # At most one queued/processing job per payment.
        Index(
            "uq_jobs_active_payment",
            "payment_id",
            unique=True,
            sqlite_where=text(_ACTIVE_PREDICATE),
            postgresql_where=text(_ACTIVE_PREDICATE),
        ),
    )

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(value_enum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
