"""Schemas for payment entities."""
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from hedgepay.models.payment import PaymentStatus


class PaymentCreate(BaseModel):
    amount_cents: StrictInt
    currency: str | None = None


class PaymentAccepted(BaseModel):
    id: int
    status: PaymentStatus

    model_config = ConfigDict(from_attributes=True)


class PaymentRead(BaseModel):
    id: int
    amount_cents: int
    currency: str
    status: PaymentStatus
    provider: str | None = Field(default=None, validation_alias="provider_success")
    external_payment_id: str | None
    last_error: str | None

    model_config = ConfigDict(from_attributes=True)
