"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

_scheduler_active = False
_active_workers = 0


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def worker_started() -> None:
    global _active_workers
    _active_workers += 1


def worker_stopped() -> None:
    global _active_workers
    _active_workers = max(0, _active_workers - 1)


def active_worker_count() -> int:
    return _active_workers
