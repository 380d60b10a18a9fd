"""Schemas exposing circuit breaker state."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from hedgepay.models.provider_health import BreakerState


class ProviderHealthRead(BaseModel):
    provider: str
    state: BreakerState
    success_count: int
    failure_count: int
    last_success_at: datetime | None
    last_failure_at: datetime | None
    cooldown_until: datetime | None

    model_config = ConfigDict(from_attributes=True)
