from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hedgepay import db  # moteur/metadata centralisés
from hedgepay.config import AppInfo, get_settings
from hedgepay.core.logging import get_logger, setup_logging
from hedgepay.core.runtime_state import set_scheduler_active
import hedgepay.models  # enregistre les tables
from hedgepay.routers import get_api_router
from hedgepay.services.cron import refresh_scheduler_lease, requeue_stale_jobs_once
from hedgepay.services.provider_health import ensure_provider_health
from hedgepay.services.scheduler_lock import release_scheduler_lock, try_acquire_scheduler_lock
from hedgepay.services.worker import PaymentWorker, make_worker_id
from hedgepay.utils.errors import error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _current_settings():
    """Return fresh settings (cached within get_settings)."""

    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Idempotency-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _start_scheduler(settings: Any) -> bool:
    """Start maintenance jobs when this instance wins the scheduler lock."""

    global scheduler
    with db.get_sessionmaker()() as session:
        lock_acquired = try_acquire_scheduler_lock(session)
    if not lock_acquired:
        logger.warning(
            "Scheduler disabled because lock is already held by another instance.",
            extra={"env": settings.app_env},
        )
        return False

    scheduler = AsyncIOScheduler()
    scheduler.start()
    scheduler.add_job(
        requeue_stale_jobs_once,
        "interval",
        seconds=60,
        id="requeue-stale-jobs",
        replace_existing=True,
    )
    scheduler.add_job(
        refresh_scheduler_lease,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    set_scheduler_active(True)
    return True


# -------- Lifespan --------
@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    settings = _current_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})

    db.init_engine()  # sync, idempotent
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    with db.get_sessionmaker()() as session:
        ensure_provider_health(session, settings.PROVIDERS)

    set_scheduler_active(False)
    lock_acquired = _start_scheduler(settings) if settings.SCHEDULER_ENABLED else False

    workers: list[PaymentWorker] = []
    worker_tasks: list[asyncio.Task] = []
    if settings.WORKER_ENABLED:
        for index in range(settings.WORKER_CONCURRENCY):
            worker = PaymentWorker(settings=settings, worker_id=make_worker_id(index))
            workers.append(worker)
            worker_tasks.append(asyncio.create_task(worker.run(), name=f"payment-worker-{index}"))
    try:
        yield
    finally:
        for worker in workers:
            worker.stop()
        if worker_tasks:
            await asyncio.gather(*worker_tasks, return_exceptions=True)
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            with db.get_sessionmaker()() as session:
                release_scheduler_lock(session)
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

# Middleware & routes
_configure_middlewares(app)
app.include_router(get_api_router())


# Handlers d’erreurs
@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
