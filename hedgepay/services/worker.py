"""Settlement worker: claims jobs and drives each payment to a terminal state."""
from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hedgepay import db as database
from hedgepay.config import Settings, get_settings
from hedgepay.core.logging import setup_logging
from hedgepay.core.runtime_state import worker_started, worker_stopped
from hedgepay.models import PAYMENT_FAILED, PAYMENT_SUCCEEDED, Job, JobStatus, Payment, TERMINAL_PAYMENT_STATUSES
from hedgepay.services.attempts import record_attempt
from hedgepay.services.jobs import claim_next_job, finalize_job, retry_job
from hedgepay.services.outbox import add_outbox_event
from hedgepay.services.payments import get_payment, mark_failed, mark_processing, mark_succeeded
from hedgepay.services.provider_client import ProviderClient, ProviderResult
from hedgepay.services.provider_health import ensure_provider_health, record_failure, record_success
from hedgepay.services.routing import RoutingService
from hedgepay.utils.backoff import next_delay_seconds

logger = logging.getLogger(__name__)

UNKNOWN_PROVIDER = "UNKNOWN"


def make_worker_id(suffix: str | int | None = None) -> str:
    base = f"worker-{socket.gethostname()}-{os.getpid()}"
    return base if suffix is None else f"{base}-{suffix}"


def _provider_payload(payment: Payment) -> dict[str, object]:
    return {
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        "payment_id": payment.id,
    }


class PaymentWorker:
    """One polling loop; run several instances to scale out.

    Correctness across instances rests entirely on ``claim_next_job`` handing
    each job to a single worker.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        session_factory: Callable[[], Session] | None = None,
        routing: RoutingService | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory or database.get_sessionmaker()
        self._provider_client: ProviderClient | None = None
        if routing is None:
            self._provider_client = ProviderClient(timeout_seconds=self.settings.PROVIDER_TIMEOUT_SECONDS)
            routing = RoutingService(self.settings, self._provider_client.call)
        self.routing = routing
        self.worker_id = worker_id or make_worker_id()
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------ jobs
    async def process_job(self, job: Job) -> None:
        """Run one settlement attempt; never lets a job stay claimed after a fault."""

        job_id, payment_id, attempts = job.id, job.payment_id, job.attempts
        log_extra = {"job_id": job_id, "payment_id": payment_id, "worker_id": self.worker_id}
        with self._session_factory() as db:
            try:
                await self._settle(db, job_id, payment_id, attempts)
            except Exception:
                logger.exception("Job processing failed; marking dead", extra=log_extra)
                db.rollback()
                try:
                    finalize_job(db, job_id, JobStatus.DEAD, worker_id=self.worker_id)
                except SQLAlchemyError:
                    logger.exception("Could not mark job dead", extra=log_extra)

    async def _settle(self, db: Session, job_id: int, payment_id: int, attempts: int) -> None:
        payment = get_payment(db, payment_id)
        if payment is None:
            logger.error("Job references a missing payment", extra={"job_id": job_id, "payment_id": payment_id})
            finalize_job(db, job_id, JobStatus.DEAD, worker_id=self.worker_id)
            return
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            # A previous run settled the payment but died before finalizing the job.
            finalize_job(db, job_id, JobStatus.DONE, worker_id=self.worker_id)
            return

        mark_processing(db, payment.id)
        result = await self.routing.routed_payment(db, _provider_payload(payment), payment.idempotency_key)
        provider = result.provider or UNKNOWN_PROVIDER

        record_attempt(
            db,
            payment_id=payment.id,
            provider=provider,
            status=result.outcome,
            http_status=result.code,
            latency_ms=result.latency_ms,
            error_message=result.error,
        )

        if result.ok:
            self._on_success(db, job_id, payment, provider, result)
        else:
            self._on_failure(db, job_id, attempts, payment, provider, result)

    def _on_success(self, db: Session, job_id: int, payment: Payment, provider: str, result: ProviderResult) -> None:
        record_success(db, provider)
        # Payment transition, event and job finalize share one commit.
        if mark_succeeded(db, payment.id, provider=provider, external_id=result.external_id, commit=False):
            add_outbox_event(
                db,
                payment.id,
                PAYMENT_SUCCEEDED,
                {"provider": provider, "external_id": result.external_id},
            )
        finalize_job(db, job_id, JobStatus.DONE, worker_id=self.worker_id, commit=False)
        db.commit()
        logger.info(
            "Payment settled",
            extra={"payment_id": payment.id, "provider": provider, "latency_ms": result.latency_ms},
        )

    def _on_failure(
        self,
        db: Session,
        job_id: int,
        attempts: int,
        payment: Payment,
        provider: str,
        result: ProviderResult,
    ) -> None:
        record_failure(
            db,
            provider,
            threshold=self.settings.BREAKER_FAILURE_THRESHOLD,
            cooldown_seconds=self.settings.BREAKER_COOLDOWN_SECONDS,
        )
        attempts += 1
        if attempts >= self.settings.MAX_ATTEMPTS:
            reason = result.error or "max_retries"
            if not finalize_job(db, job_id, JobStatus.DEAD, worker_id=self.worker_id, commit=False):
                # Reclaimed by another worker, which now owns the payment outcome.
                db.rollback()
                return
            if mark_failed(db, payment.id, reason=reason, commit=False):
                add_outbox_event(db, payment.id, PAYMENT_FAILED, {"error": reason})
            db.commit()
            logger.warning(
                "Payment failed after max attempts",
                extra={"payment_id": payment.id, "attempts": attempts, "error": reason},
            )
            return

        delay = next_delay_seconds(
            attempts,
            cap_seconds=self.settings.BACKOFF_CAP_SECONDS,
            max_jitter_seconds=self.settings.BACKOFF_MAX_JITTER_SECONDS,
        )
        retry_job(db, job_id, attempts, delay, worker_id=self.worker_id)

    # ------------------------------------------------------------------ loop
    async def run_once(self) -> bool:
        """Claim and process a single job; ``False`` when the queue had nothing eligible."""

        with self._session_factory() as db:
            job = claim_next_job(db, self.worker_id)
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def run(self) -> None:
        logger.info("Worker started", extra={"worker_id": self.worker_id})
        worker_started()
        try:
            while not self._stop.is_set():
                try:
                    claimed = await self.run_once()
                except SQLAlchemyError:
                    logger.exception("Job claim failed", extra={"worker_id": self.worker_id})
                    claimed = False
                if not claimed:
                    await self._idle()
        finally:
            await self.routing.drain()
            if self._provider_client is not None:
                await self._provider_client.aclose()
            worker_stopped()
            logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def _idle(self) -> None:
        # Sleeps for the poll interval, waking early on stop().
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.settings.WORKER_POLL_INTERVAL_SECONDS)
        except TimeoutError:
            return

    def stop(self) -> None:
        self._stop.set()


def main() -> None:
    """Entry point for a standalone worker process."""

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    database.init_engine()
    with database.get_sessionmaker()() as db:
        ensure_provider_health(db, settings.PROVIDERS)

    worker = PaymentWorker(settings=settings)
    try:
        asyncio.run(worker.run())
    except KeyboardInterrupt:
        logger.info("Worker interrupted", extra={"worker_id": worker.worker_id})
    finally:
        database.close_engine()


__all__ = ["PaymentWorker", "main", "make_worker_id"]


if __name__ == "__main__":
    main()
