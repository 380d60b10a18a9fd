"""Per-provider circuit breaker persisted in ``provider_health``.

State is never assigned directly: every transition is one conditional UPDATE
evaluated by the database, so concurrent workers recording outcomes for the
same provider cannot lose increments or race each other into an inconsistent
state.

closed --(failures >= threshold)--> open --(cooldown elapsed, sweep)--> half_open
   ^                                                                       |
   +------------------------------(any success)----------------------------+
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from hedgepay.config import ProviderConfig
from hedgepay.models import ROUTABLE_STATES, BreakerState, ProviderHealth
from hedgepay.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 30


def ensure_provider_health(db: Session, providers: Iterable[ProviderConfig]) -> list[str]:
    """Insert a ``closed`` health row for each configured provider that lacks one."""

    existing = set(db.scalars(select(ProviderHealth.provider)))
    created: list[str] = []
    for provider in providers:
        if provider.name in existing:
            continue
        db.add(ProviderHealth(provider=provider.name, state=BreakerState.CLOSED))
        created.append(provider.name)
    db.commit()
    if created:
        logger.info("Provider health rows seeded", extra={"providers": created})
    return created


def list_provider_health(db: Session) -> list[ProviderHealth]:
    stmt = select(ProviderHealth).order_by(ProviderHealth.provider).execution_options(populate_existing=True)
    return list(db.scalars(stmt))


def get_provider_health(db: Session, provider: str) -> ProviderHealth | None:
    stmt = (
        select(ProviderHealth)
        .where(ProviderHealth.provider == provider)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def is_routable(health: ProviderHealth | None) -> bool:
    return health is not None and health.state in ROUTABLE_STATES


def record_success(db: Session, provider: str, *, now: datetime | None = None) -> None:
    """A single success closes the breaker and wipes the failure streak."""

    now = now or utcnow()
    result = db.execute(
        update(ProviderHealth)
        .where(ProviderHealth.provider == provider)
        .values(
            success_count=ProviderHealth.success_count + 1,
            failure_count=0,
            state=BreakerState.CLOSED,
            cooldown_until=None,
            last_success_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning("Success recorded for unknown provider", extra={"provider": provider})


def record_failure(
    db: Session,
    provider: str,
    *,
    threshold: int = DEFAULT_FAILURE_THRESHOLD,
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
    now: datetime | None = None,
) -> None:
    """Count a failure; the failure that reaches ``threshold`` opens the breaker."""

    now = now or utcnow()
    trips = ProviderHealth.failure_count + 1 >= threshold
    result = db.execute(
        update(ProviderHealth)
        .where(ProviderHealth.provider == provider)
        .values(
            failure_count=ProviderHealth.failure_count + 1,
            last_failure_at=now,
            state=case((trips, BreakerState.OPEN.value), else_=ProviderHealth.state),
            cooldown_until=case(
                (trips, now + timedelta(seconds=cooldown_seconds)),
                else_=ProviderHealth.cooldown_until,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning("Failure recorded for unknown provider", extra={"provider": provider})
        return

    health = get_provider_health(db, provider)
    if health is not None and health.state == BreakerState.OPEN:
        logger.warning(
            "Provider circuit open",
            extra={
                "provider": provider,
                "failure_count": health.failure_count,
                "cooldown_until": health.cooldown_until.isoformat() if health.cooldown_until else None,
            },
        )


def half_open_sweep(db: Session, *, now: datetime | None = None) -> int:
    """Move ``open`` providers whose cooldown has elapsed to ``half_open``."""

    now = now or utcnow()
    result = db.execute(
        update(ProviderHealth)
        .where(
            ProviderHealth.state == BreakerState.OPEN,
            ProviderHealth.cooldown_until.is_not(None),
            ProviderHealth.cooldown_until <= now,
        )
        .values(state=BreakerState.HALF_OPEN, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("Providers moved to half_open", extra={"count": result.rowcount})
    return result.rowcount


__all__ = [
    "ensure_provider_health",
    "get_provider_health",
    "half_open_sweep",
    "is_routable",
    "list_provider_health",
    "record_failure",
    "record_success",
]
