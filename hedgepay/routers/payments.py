"""Payment intake and status endpoints."""
from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from hedgepay.db import get_db
from hedgepay.schemas.payment import PaymentAccepted, PaymentCreate, PaymentRead
from hedgepay.services import payments as payments_service
from hedgepay.utils.errors import http_error

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentAccepted, status_code=status.HTTP_202_ACCEPTED)
def create_payment(
    payload: PaymentCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
):
    """Accept a payment for asynchronous settlement."""

    if not idempotency_key:
        raise http_error(
            status.HTTP_400_BAD_REQUEST, "IDEMPOTENCY_KEY_REQUIRED", "Idempotency-Key header required."
        )
    return payments_service.create_payment(
        db,
        amount_cents=payload.amount_cents,
        currency=payload.currency,
        idempotency_key=idempotency_key,
    )


@router.get("/{payment_id}", response_model=PaymentRead)
def read_payment(payment_id: int, db: Session = Depends(get_db)):
    payment = payments_service.get_payment(db, payment_id)
    if payment is None:
        raise http_error(
            status.HTTP_404_NOT_FOUND, "PAYMENT_NOT_FOUND", "Payment not found."
        )
    return payment
