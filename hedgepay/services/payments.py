"""Payment intake and lifecycle transitions."""
import logging

from fastapi import status
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hedgepay.config import Settings, get_settings
from hedgepay.models import Payment, PaymentStatus, TERMINAL_PAYMENT_STATUSES
from hedgepay.services.idempotency import insert_or_get_existing
from hedgepay.services.jobs import enqueue_job
from hedgepay.utils.errors import http_error
from hedgepay.utils.time import utcnow

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


def _validate_amount(amount_cents: object) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise http_error(
            status.HTTP_400_BAD_REQUEST, "INVALID_AMOUNT", "amount_cents must be a positive integer."
        )
    return amount_cents


def _normalise_currency(currency: str | None, settings: Settings) -> str:
    if currency is None:
        return settings.DEFAULT_CURRENCY
    cleaned = currency.strip().upper()
    if len(cleaned) != 3 or not cleaned.isalpha():
        raise http_error(
            status.HTTP_400_BAD_REQUEST, "INVALID_CURRENCY", "currency must be a 3-letter ISO code."
        )
    return cleaned


def create_payment(
    db: Session,
    *,
    amount_cents: int,
    currency: str | None,
    idempotency_key: str,
    settings: Settings | None = None,
) -> Payment:
    """Record a payment intent once per idempotency key and queue its settlement.

    The payment insert and the job enqueue commit together or not at all. A
    replayed key returns the original row, only refreshing ``updated_at``.
    """

    settings = settings or get_settings()
    amount_cents = _validate_amount(amount_cents)
    currency_code = _normalise_currency(currency, settings)
    if not idempotency_key:
        raise http_error(
            status.HTTP_400_BAD_REQUEST, "IDEMPOTENCY_KEY_REQUIRED", "Idempotency-Key header required."
        )

    try:
        payment, created = insert_or_get_existing(
            db,
            Payment,
            idempotency_key,
            lambda: Payment(
                amount_cents=amount_cents,
                currency=currency_code,
                status=PaymentStatus.PENDING,
                idempotency_key=idempotency_key,
            ),
        )
        if not created:
            payment.updated_at = utcnow()
            db.add(payment)
        if payment.status not in TERMINAL_PAYMENT_STATUSES:
            enqueue_job(db, payment.id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Payment creation failed", extra={"idem": idempotency_key})
        raise

    if created:
        logger.info(
            "Payment accepted",
            extra={"payment_id": payment.id, "amount_cents": amount_cents, "currency": currency_code},
        )
    else:
        logger.info(
            "Idempotent payment replay",
            extra={"payment_id": payment.id, "idem": idempotency_key, "status": payment.status.value},
        )
    return payment


def get_payment(db: Session, payment_id: int) -> Payment | None:
    return db.get(Payment, payment_id, populate_existing=True)


def _transition(db: Session, payment_id: int, values: dict, *, commit: bool) -> bool:
    # Terminal payments never move again.
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(_OPEN_STATUSES))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.commit()
    return result.rowcount == 1


def mark_processing(db: Session, payment_id: int) -> bool:
    return _transition(db, payment_id, {"status": PaymentStatus.PROCESSING}, commit=True)


def mark_succeeded(
    db: Session,
    payment_id: int,
    *,
    provider: str,
    external_id: str | None,
    commit: bool = True,
) -> bool:
    return _transition(
        db,
        payment_id,
        {
            "status": PaymentStatus.SUCCEEDED,
            "provider_success": provider,
            "external_payment_id": external_id,
            "last_error": None,
        },
        commit=commit,
    )


def mark_failed(db: Session, payment_id: int, *, reason: str, commit: bool = True) -> bool:
    return _transition(
        db,
        payment_id,
        {"status": PaymentStatus.FAILED, "last_error": reason},
        commit=commit,
    )


__all__ = [
    "create_payment",
    "get_payment",
    "mark_failed",
    "mark_processing",
    "mark_succeeded",
]
