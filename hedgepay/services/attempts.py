"""Append-only audit of provider calls."""
from __future__ import annotations

from sqlalchemy.orm import Session

from hedgepay.models import PaymentAttempt


def record_attempt(
    db: Session,
    *,
    payment_id: int,
    provider: str,
    status: str,
    http_status: int | None,
    latency_ms: int | None,
    error_message: str | None = None,
) -> PaymentAttempt:
    attempt = PaymentAttempt(
        payment_id=payment_id,
        provider=provider,
        status=status,
        http_status=http_status,
        latency_ms=latency_ms,
        error_message=error_message,
    )
    db.add(attempt)
    db.commit()
    return attempt


__all__ = ["record_attempt"]
