"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env before the application reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./hedgepay_test.db")
os.environ.setdefault("HEDGEPAY_ENV", "test")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from hedgepay.main import app  # noqa: E402
from hedgepay.config import ProviderConfig, Settings  # noqa: E402
from hedgepay.db import configure_sqlite_engine, get_db  # noqa: E402
from hedgepay.services.provider_health import ensure_provider_health  # noqa: E402
from fakes import FakeProviders  # noqa: E402

DB_PATH = Path("./hedgepay_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh DB file for each session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = configure_sqlite_engine(
    create_engine(
        os.environ["DATABASE_URL"],
        connect_args={"check_same_thread": False},
        future=True,
    )
)
TestingSessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False,
    join_transaction_mode="create_savepoint",
)

# --- (2) Schema comes from Alembic only
_run_migrations()


@pytest.fixture
def db_session() -> Iterator[Session]:
    """Session whose commits are savepoints inside one transaction rolled back after the test."""

    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def shared_session(db_session: Session) -> Callable[[], object]:
    """Session factory for the worker that hands out the test session without closing it."""

    @contextmanager
    def _factory() -> Iterator[Session]:
        yield db_session

    return _factory


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _factory(providers: list[tuple[str, int]] | None = None, **overrides) -> Settings:
        provider_specs = providers or [("A", 150), ("B", 150)]
        configs = [
            ProviderConfig(name=name, url=f"http://provider-{name.lower()}.test/payments", fee_bps=fee)
            for name, fee in provider_specs
        ]
        overrides.setdefault("HEDGE_DELAY_SECONDS", 0.05)
        overrides.setdefault("BACKOFF_MAX_JITTER_SECONDS", 0)
        return Settings(PROVIDERS=configs, **overrides)

    return _factory


@pytest.fixture
def seeded_settings(db_session: Session, make_settings) -> Callable[..., Settings]:
    """Like ``make_settings`` but also inserts closed health rows for every provider."""

    def _factory(providers: list[tuple[str, int]] | None = None, **overrides) -> Settings:
        settings = make_settings(providers, **overrides)
        ensure_provider_health(db_session, settings.PROVIDERS)
        return settings

    return _factory


@pytest.fixture
def fake_providers() -> FakeProviders:
    return FakeProviders()
