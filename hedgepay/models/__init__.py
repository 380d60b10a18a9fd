"""ORM models package."""
from .attempt import PaymentAttempt
from .base import Base
from .job import ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES, Job, JobStatus
from .outbox import PAYMENT_FAILED, PAYMENT_SUCCEEDED, OutboxEvent
from .payment import TERMINAL_PAYMENT_STATUSES, Payment, PaymentStatus
from .provider_health import ROUTABLE_STATES, BreakerState, ProviderHealth
from .scheduler_lock import SchedulerLock

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "Base",
    "BreakerState",
    "Job",
    "JobStatus",
    "OutboxEvent",
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "Payment",
    "PaymentAttempt",
    "PaymentStatus",
    "ProviderHealth",
    "ROUTABLE_STATES",
    "SchedulerLock",
    "TERMINAL_JOB_STATUSES",
    "TERMINAL_PAYMENT_STATUSES",
]
