"""Cost-aware provider selection and hedged settlement calls."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from hedgepay.config import ProviderConfig, Settings
from hedgepay.services.provider_client import CallProvider, ProviderResult
from hedgepay.services.provider_health import half_open_sweep, is_routable, list_provider_health

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderChoice:
    preferred: ProviderConfig | None
    backup: ProviderConfig | None


class _Race:
    """First-result-wins arbitration between concurrent provider calls.

    Once decided, results from the remaining calls are only logged: they never
    reach the caller, so they cannot touch breaker or payment state.
    """

    def __init__(self) -> None:
        self.decided = False
        self.winner: ProviderResult | None = None

    def decide(self, result: ProviderResult) -> bool:
        if self.decided:
            return False
        self.decided = True
        self.winner = result
        return True

    def discard_late(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Losing provider call raised", exc_info=exc)
            return
        result = task.result()
        logger.info(
            "Discarding late provider result",
            extra={"provider": result.provider, "code": result.code, "latency_ms": result.latency_ms},
        )


class RoutingService:
    """Picks the cheapest healthy provider and hedges with the next cheapest."""

    def __init__(self, settings: Settings, call_provider: CallProvider) -> None:
        self.settings = settings
        self._call_provider = call_provider
        self._inflight: set[asyncio.Task] = set()

    def choose_providers(self, db: Session) -> ProviderChoice:
        half_open_sweep(db)
        health = {row.provider: row for row in list_provider_health(db)}
        candidates = sorted(
            (provider for provider in self.settings.PROVIDERS if is_routable(health.get(provider.name))),
            key=lambda provider: provider.fee_bps,
        )
        return ProviderChoice(
            preferred=candidates[0] if candidates else None,
            backup=candidates[1] if len(candidates) > 1 else None,
        )

    async def routed_payment(
        self,
        db: Session,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> ProviderResult:
        choice = self.choose_providers(db)
        # Release read locks before awaiting providers; SQLite writers block on them.
        db.commit()
        if choice.preferred is None:
            return await self._fail_open(payload, idempotency_key)
        return await self._hedged(choice, payload, idempotency_key)

    async def _fail_open(self, payload: dict[str, Any], idempotency_key: str) -> ProviderResult:
        # The breaker has excluded everyone; keep attempting settlement anyway.
        providers = self.settings.PROVIDERS[:2]
        logger.warning(
            "No eligible provider; calling configured providers unconditionally",
            extra={"providers": [provider.name for provider in providers]},
        )
        tasks = [self._start(provider, payload, idempotency_key) for provider in providers]
        return await self._race(tasks, want_success=True)

    async def _hedged(
        self,
        choice: ProviderChoice,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> ProviderResult:
        assert choice.preferred is not None
        tasks = [self._start(choice.preferred, payload, idempotency_key)]
        if choice.backup is not None:
            done, _ = await asyncio.wait(tasks, timeout=self.settings.HEDGE_DELAY_SECONDS)
            if not done:
                logger.info(
                    "Hedging to backup provider",
                    extra={"preferred": choice.preferred.name, "backup": choice.backup.name},
                )
                tasks.append(self._start(choice.backup, payload, idempotency_key))
        return await self._race(tasks, want_success=False)

    def _start(self, provider: ProviderConfig, payload: dict[str, Any], idempotency_key: str) -> asyncio.Task:
        task = asyncio.create_task(
            self._call_labelled(provider, payload, idempotency_key),
            name=f"provider-call-{provider.name}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _call_labelled(
        self,
        provider: ProviderConfig,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> ProviderResult:
        result = await self._call_provider(provider, payload, idempotency_key)
        return result.labelled(provider.name)

    async def _race(self, tasks: list[asyncio.Task], *, want_success: bool) -> ProviderResult:
        """Return the first completed result (or, with ``want_success``, the first ok one).

        Simultaneous completions resolve in launch order, i.e. cheapest first.
        """

        race = _Race()
        pending = list(tasks)
        first_completed: ProviderResult | None = None
        while pending and not race.decided:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in [t for t in tasks if t in done and t in pending]:
                pending.remove(task)
                result = task.result()
                if first_completed is None:
                    first_completed = result
                if not want_success or result.ok:
                    race.decide(result)
                    break

        if not race.decided:
            assert first_completed is not None
            race.decide(first_completed)
        for task in pending:
            task.add_done_callback(race.discard_late)

        assert race.winner is not None
        return race.winner

    async def drain(self) -> None:
        """Wait for background losers of earlier races to finish."""

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


__all__ = ["ProviderChoice", "RoutingService"]
