"""Outbox writer for payment lifecycle events."""
from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from hedgepay.models import OutboxEvent


def add_outbox_event(db: Session, payment_id: int, event_type: str, payload: dict[str, Any]) -> OutboxEvent:
    """Stage an event in the caller's transaction; it commits with the state change it describes."""

    event = OutboxEvent(payment_id=payment_id, type=event_type, payload={"payment_id": payment_id, **payload})
    db.add(event)
    return event


__all__ = ["add_outbox_event"]
