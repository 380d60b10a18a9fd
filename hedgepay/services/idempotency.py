# hedgepay/services/idempotency.py
"""Idempotency helpers."""
from typing import Callable, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

T = TypeVar("T")


def get_existing_by_key(
    db: Session,
    model: Type[T],
    key_value: str | None,
    *,
    key_field: str = "idempotency_key",
) -> Optional[T]:
    """Return existing record for a given idempotency key if present."""
    if not key_value:  # None, "", etc.
        return None
    if not hasattr(model, key_field):
        raise AttributeError(f"{model.__name__} has no field '{key_field}'")

    column = getattr(model, key_field)
    stmt = select(model).where(column == key_value).limit(1).execution_options(populate_existing=True)
    return db.scalars(stmt).first()


def insert_or_get_existing(
    db: Session,
    model: Type[T],
    key_value: str,
    build_instance: Callable[[], T],
    *,
    key_field: str = "idempotency_key",
) -> tuple[T, bool]:
    """Insert a record keyed by ``key_value`` unless one exists; return ``(record, created)``.

    The insert runs inside a SAVEPOINT so a concurrent request that wins the
    unique-key race only rolls back this insert, not the caller's transaction.
    Nothing is committed here.
    """
    existing = get_existing_by_key(db, model, key_value, key_field=key_field)
    if existing is not None:
        return existing, False

    instance = build_instance()
    try:
        with db.begin_nested():
            db.add(instance)
    except IntegrityError:
        # Race condition: re-read the winner
        existing = get_existing_by_key(db, model, key_value, key_field=key_field)
        if existing is None:
            raise
        return existing, False
    return instance, True
