import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from fakes import error_result, ok_result
from hedgepay.core.runtime_state import active_worker_count
from hedgepay.db import build_engine, configure_sqlite_engine
from hedgepay.models import (
    Base,
    Job,
    JobStatus,
    OutboxEvent,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    Payment,
    PaymentAttempt,
    PaymentStatus,
)
from hedgepay.services.jobs import claim_next_job, enqueue_job, get_job, requeue_stale_jobs
from hedgepay.services.payments import create_payment, get_payment
from hedgepay.services.provider_health import ensure_provider_health, get_provider_health
from hedgepay.services.routing import RoutingService
from hedgepay.services.worker import PaymentWorker
from hedgepay.utils.time import as_utc, utcnow


def _worker(settings, fake_providers, shared_session) -> PaymentWorker:
    return PaymentWorker(
        settings=settings,
        session_factory=shared_session,
        routing=RoutingService(settings, fake_providers),
        worker_id="worker-test",
    )


def _submit(db_session, settings, amount_cents: int = 1500) -> Payment:
    return create_payment(
        db_session,
        amount_cents=amount_cents,
        currency="BRL",
        idempotency_key=f"idem-{uuid4().hex}",
        settings=settings,
    )


def _jobs(db_session, payment_id: int) -> list[Job]:
    stmt = select(Job).where(Job.payment_id == payment_id).order_by(Job.id).execution_options(populate_existing=True)
    return list(db_session.scalars(stmt))


def _events(db_session, payment_id: int) -> list[OutboxEvent]:
    return list(db_session.scalars(select(OutboxEvent).where(OutboxEvent.payment_id == payment_id)))


@pytest.mark.anyio
async def test_success_settles_payment_and_emits_event(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150), ("B", 150), ("C", 90)])
    fake_providers.script("C", (0, ok_result("ext-c")))
    payment = _submit(db_session, settings)
    worker = _worker(settings, fake_providers, shared_session)

    assert await worker.run_once() is True
    await worker.routing.drain()

    settled = get_payment(db_session, payment.id)
    assert settled.status == PaymentStatus.SUCCEEDED
    assert settled.provider_success == "C"
    assert settled.external_payment_id == "ext-c"
    assert settled.last_error is None
    assert [job.status for job in _jobs(db_session, payment.id)] == [JobStatus.DONE]

    events = _events(db_session, payment.id)
    assert [event.type for event in events] == [PAYMENT_SUCCEEDED]
    assert events[0].payload == {"payment_id": payment.id, "provider": "C", "external_id": "ext-c"}

    attempts = list(db_session.scalars(select(PaymentAttempt).where(PaymentAttempt.payment_id == payment.id)))
    assert [(a.provider, a.status, a.http_status) for a in attempts] == [("C", "ok", 200)]
    assert get_provider_health(db_session, "C").success_count == 1

    # Queue is now empty.
    assert await worker.run_once() is False


@pytest.mark.anyio
async def test_provider_receives_payment_payload_and_key(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)])
    payment = _submit(db_session, settings, amount_cents=4200)
    worker = _worker(settings, fake_providers, shared_session)

    await worker.run_once()

    name, payload, key = fake_providers.calls[0]
    assert name == "A"
    assert payload == {"amount_cents": 4200, "currency": "BRL", "payment_id": payment.id}
    assert key == payment.idempotency_key


@pytest.mark.anyio
async def test_failure_schedules_retry_with_growing_delay(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)], MAX_ATTEMPTS=3, BREAKER_FAILURE_THRESHOLD=10)
    fake_providers.script("A", (0, error_result(500, "boom")))
    payment = _submit(db_session, settings)
    worker = _worker(settings, fake_providers, shared_session)

    before = utcnow()
    await worker.run_once()

    job = _jobs(db_session, payment.id)[0]
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 1
    assert job.locked_by is None
    first_delay = (as_utc(job.run_at) - before).total_seconds()
    assert 2 <= first_delay < 4
    assert get_payment(db_session, payment.id).status == PaymentStatus.PROCESSING

    # Claim again as if the delay had elapsed.
    claimed = claim_next_job(db_session, "worker-test", now=as_utc(job.run_at))
    before = utcnow()
    await worker.process_job(claimed)

    job = get_job(db_session, job.id)
    assert job.attempts == 2
    second_delay = (as_utc(job.run_at) - before).total_seconds()
    assert second_delay > first_delay
    assert get_provider_health(db_session, "A").failure_count == 2


@pytest.mark.anyio
async def test_exhausted_attempts_fail_payment(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)], MAX_ATTEMPTS=1)
    fake_providers.script("A", (0, error_result(500, "card declined")))
    payment = _submit(db_session, settings)
    worker = _worker(settings, fake_providers, shared_session)

    await worker.run_once()

    failed = get_payment(db_session, payment.id)
    assert failed.status == PaymentStatus.FAILED
    assert failed.last_error == "card declined"
    assert [job.status for job in _jobs(db_session, payment.id)] == [JobStatus.DEAD]
    events = _events(db_session, payment.id)
    assert [event.type for event in events] == [PAYMENT_FAILED]
    assert events[0].payload == {"payment_id": payment.id, "error": "card declined"}


@pytest.mark.anyio
async def test_failure_without_error_text_uses_max_retries(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)], MAX_ATTEMPTS=1)
    fake_providers.script("A", (0, error_result(500, None)))
    payment = _submit(db_session, settings)

    await _worker(settings, fake_providers, shared_session).run_once()

    assert get_payment(db_session, payment.id).last_error == "max_retries"


@pytest.mark.anyio
async def test_repeated_failures_open_breaker(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)], MAX_ATTEMPTS=1, BREAKER_FAILURE_THRESHOLD=2)
    fake_providers.script("A", (0, error_result()))
    worker = _worker(settings, fake_providers, shared_session)

    for _ in range(2):
        _submit(db_session, settings)
        await worker.run_once()

    assert get_provider_health(db_session, "A").state.value == "open"


@pytest.mark.anyio
async def test_job_for_missing_payment_goes_dead(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)])
    payment = _submit(db_session, settings)
    job = _jobs(db_session, payment.id)[0]
    worker = _worker(settings, fake_providers, shared_session)
    claimed = claim_next_job(db_session, "worker-test")

    # Simulate the row vanishing between enqueue and processing.
    worker_job = Job(id=claimed.id, payment_id=payment.id + 10_000, attempts=0)
    await worker.process_job(worker_job)

    assert get_job(db_session, job.id).status == JobStatus.DEAD
    assert fake_providers.calls == []


@pytest.mark.anyio
async def test_job_for_terminal_payment_is_closed_without_calls(db_session, seeded_settings, fake_providers, shared_session):
    settings = seeded_settings([("A", 150)])
    payment = _submit(db_session, settings)
    db_session.get(Payment, payment.id).status = PaymentStatus.SUCCEEDED
    db_session.commit()
    worker = _worker(settings, fake_providers, shared_session)

    await worker.run_once()

    assert [job.status for job in _jobs(db_session, payment.id)] == [JobStatus.DONE]
    assert fake_providers.calls == []


@pytest.mark.anyio
async def test_unexpected_error_marks_job_dead(db_session, seeded_settings, shared_session):
    settings = seeded_settings([("A", 150)])

    async def exploding(provider, payload, idempotency_key):
        raise RuntimeError("kaboom")

    payment = _submit(db_session, settings)
    worker = PaymentWorker(
        settings=settings,
        session_factory=shared_session,
        routing=RoutingService(settings, exploding),
        worker_id="worker-test",
    )

    assert await worker.run_once() is True

    assert [job.status for job in _jobs(db_session, payment.id)] == [JobStatus.DEAD]


@pytest.mark.anyio
async def test_requeued_payment_is_not_double_enqueued(db_session, seeded_settings):
    settings = seeded_settings([("A", 150)])
    payment = _submit(db_session, settings)

    assert enqueue_job(db_session, payment.id) is None
    assert len(_jobs(db_session, payment.id)) == 1


@pytest.mark.anyio
async def test_reclaimed_job_is_left_to_new_owner(db_session, seeded_settings, shared_session):
    settings = seeded_settings([("A", 150)], MAX_ATTEMPTS=1)
    payment = _submit(db_session, settings)
    later = utcnow() + timedelta(seconds=1)

    async def slow_decline(provider, payload, idempotency_key):
        # The claim expires mid-call and another worker picks the job up.
        requeue_stale_jobs(db_session, older_than_seconds=0, now=later)
        claim_next_job(db_session, "worker-other", now=later)
        return error_result(500, "declined")

    worker = PaymentWorker(
        settings=settings,
        session_factory=shared_session,
        routing=RoutingService(settings, slow_decline),
        worker_id="worker-test",
    )

    await worker.run_once()

    job = _jobs(db_session, payment.id)[0]
    assert job.status == JobStatus.PROCESSING
    assert job.locked_by == "worker-other"
    assert get_payment(db_session, payment.id).status == PaymentStatus.PROCESSING
    assert _events(db_session, payment.id) == []


@pytest.mark.anyio
async def test_intake_commits_while_provider_call_is_in_flight(tmp_path, make_settings):
    url = f"sqlite:///{tmp_path / 'settle.db'}"
    engine = build_engine(url)
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    # Fail fast instead of waiting out the service's busy timeout.
    intake_engine = configure_sqlite_engine(
        create_engine(url, connect_args={"check_same_thread": False, "timeout": 1}, future=True)
    )
    IntakeSession = sessionmaker(bind=intake_engine, expire_on_commit=False, future=True)

    settings = make_settings([("A", 150)])
    with Session() as setup:
        ensure_provider_health(setup, settings.PROVIDERS)
        payment = _submit(setup, settings)

    intake_errors: list[Exception] = []

    def _intake() -> None:
        try:
            with IntakeSession() as session:
                _submit(session, settings, amount_cents=900)
        except Exception as exc:
            intake_errors.append(exc)

    async def provider(provider, payload, idempotency_key):
        await asyncio.to_thread(_intake)
        return ok_result("ext-a")

    worker = PaymentWorker(
        settings=settings,
        session_factory=Session,
        routing=RoutingService(settings, provider),
        worker_id="worker-test",
    )

    assert await worker.run_once() is True

    assert intake_errors == []
    with Session() as check:
        assert get_payment(check, payment.id).status == PaymentStatus.SUCCEEDED
        assert [job.status for job in _jobs(check, payment.id)] == [JobStatus.DONE]
        statuses = check.scalars(select(Payment.status).order_by(Payment.id)).all()
    assert statuses == [PaymentStatus.SUCCEEDED, PaymentStatus.PENDING]
    intake_engine.dispose()
    engine.dispose()


@pytest.mark.anyio
async def test_run_loop_survives_claim_errors_and_drains_on_stop(
    db_session, seeded_settings, fake_providers, shared_session, monkeypatch
):
    from hedgepay.services import worker as worker_module

    settings = seeded_settings([("A", 150), ("C", 90)], WORKER_POLL_INTERVAL_SECONDS=0.01)
    fake_providers.script("C", (0.3, ok_result("ext-c")))
    fake_providers.script("A", (0, ok_result("ext-a")))
    payment = _submit(db_session, settings)

    claims: list[str] = []

    def flaky_claim(db, worker_id, **kwargs):
        claims.append(worker_id)
        if len(claims) == 1:
            raise OperationalError("SELECT jobs", {}, Exception("database is locked"))
        return claim_next_job(db, worker_id, **kwargs)

    monkeypatch.setattr(worker_module, "claim_next_job", flaky_claim)
    worker = _worker(settings, fake_providers, shared_session)
    workers_before = active_worker_count()

    task = asyncio.create_task(worker.run())
    for _ in range(300):
        status = db_session.scalar(select(Payment.status).where(Payment.id == payment.id))
        if status == PaymentStatus.SUCCEEDED and len(claims) >= 3:
            break
        await asyncio.sleep(0.01)

    assert status == PaymentStatus.SUCCEEDED
    assert active_worker_count() == workers_before + 1
    # The slow loser is still in flight when the loop is told to stop.
    assert "C" not in fake_providers.finished

    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert "C" in fake_providers.finished
    assert active_worker_count() == workers_before
    assert [job.status for job in _jobs(db_session, payment.id)] == [JobStatus.DONE]
