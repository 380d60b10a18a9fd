"""Per-provider circuit breaker state."""
import enum
from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, value_enum


class BreakerState(str, enum.Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


ROUTABLE_STATES = (BreakerState.CLOSED, BreakerState.HALF_OPEN)


class ProviderHealth(Base):
    """Breaker counters for one provider, mutated only through recorded outcomes."""

    __tablename__ = "provider_health"

    provider: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    state: Mapped[BreakerState] = mapped_column(
        value_enum(BreakerState), nullable=False, default=BreakerState.CLOSED
    )
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cooldown_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
