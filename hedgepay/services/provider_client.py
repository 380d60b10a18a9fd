"""Outbound settlement calls to external payment providers."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

import httpx

from hedgepay.config import ProviderConfig

logger = logging.getLogger(__name__)

TIMEOUT_CODE = 599
TRANSPORT_ERROR_CODE = 598


@dataclass(frozen=True)
class ProviderResult:
    """Normalised outcome of one provider call; failures are values, never exceptions."""

    ok: bool
    code: int
    body: dict[str, Any] = field(default_factory=dict)
    latency_ms: int = 0
    provider: str | None = None

    @property
    def outcome(self) -> str:
        if self.ok:
            return "ok"
        if self.code == TIMEOUT_CODE:
            return "timeout"
        return "error"

    @property
    def error(self) -> str | None:
        value = self.body.get("error")
        return str(value) if value is not None else None

    @property
    def external_id(self) -> str | None:
        value = self.body.get("external_id")
        return str(value) if value is not None else None

    def labelled(self, provider: str) -> "ProviderResult":
        return replace(self, provider=provider)


CallProvider = Callable[[ProviderConfig, dict[str, Any], str], Awaitable[ProviderResult]]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    try:
        parsed = response.json()
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ProviderClient:
    """Issues bounded-timeout POSTs carrying the payment's idempotency key."""

    def __init__(
        self,
        *,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(transport=transport, timeout=timeout_seconds)

    async def call(
        self,
        provider: ProviderConfig,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> ProviderResult:
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        started = time.monotonic()
        try:
            # Caps the whole exchange, not just each socket phase.
            async with asyncio.timeout(self.timeout_seconds):
                response = await self._client.post(provider.url, json=payload, headers=headers)
        except (TimeoutError, httpx.TimeoutException):
            latency_ms = _elapsed_ms(started)
            logger.warning(
                "Provider call timed out",
                extra={"provider": provider.name, "latency_ms": latency_ms},
            )
            return ProviderResult(
                ok=False,
                code=TIMEOUT_CODE,
                body={"error": "timeout"},
                latency_ms=latency_ms,
                provider=provider.name,
            )
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            latency_ms = _elapsed_ms(started)
            logger.warning(
                "Provider call failed",
                extra={"provider": provider.name, "latency_ms": latency_ms, "error": str(exc)},
            )
            return ProviderResult(
                ok=False,
                code=TRANSPORT_ERROR_CODE,
                body={"error": str(exc) or exc.__class__.__name__},
                latency_ms=latency_ms,
                provider=provider.name,
            )

        return ProviderResult(
            ok=response.is_success,
            code=response.status_code,
            body=_parse_body(response),
            latency_ms=_elapsed_ms(started),
            provider=provider.name,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = [
    "CallProvider",
    "ProviderClient",
    "ProviderResult",
    "TIMEOUT_CODE",
    "TRANSPORT_ERROR_CODE",
]
