"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Environnement d'exécution: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("HEDGEPAY_ENV", "dev").lower()


class ProviderConfig(BaseModel):
    """One external payment provider the router may settle against."""

    name: str
    url: str
    fee_bps: int = Field(ge=0)


def _default_providers() -> list[ProviderConfig]:
    return [
        ProviderConfig(
            name="A",
            url=os.getenv("PROVIDER_A_URL", "http://localhost:4001/payments"),
            fee_bps=int(os.getenv("PROVIDER_A_FEE_BPS", "150")),
        ),
        ProviderConfig(
            name="B",
            url=os.getenv("PROVIDER_B_URL", "http://localhost:4002/payments"),
            fee_bps=int(os.getenv("PROVIDER_B_FEE_BPS", "150")),
        ),
    ]


class Settings(BaseSettings):
    """Environment configuration for the hedgepay settlement service."""

    app_env: str = ENV
    database_url: str = "sqlite:///hedgepay.db"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Providers & routing ---------------------------------------------
    PROVIDERS: list[ProviderConfig] = Field(default_factory=_default_providers)
    PROVIDER_TIMEOUT_SECONDS: float = 5.0
    HEDGE_DELAY_SECONDS: float = 1.2
    DEFAULT_CURRENCY: str = "BRL"

    # --- Circuit breaker ---------------------------------------------------
    BREAKER_FAILURE_THRESHOLD: int = 3
    BREAKER_COOLDOWN_SECONDS: int = 30

    # --- Retries -----------------------------------------------------------
    MAX_ATTEMPTS: int = 3
    BACKOFF_CAP_SECONDS: int = 60
    BACKOFF_MAX_JITTER_SECONDS: int = 2

    # --- Worker & scheduler ---------------------------------------------
    WORKER_ENABLED: bool = False
    WORKER_CONCURRENCY: int = 1
    WORKER_POLL_INTERVAL_SECONDS: float = 0.3
    SCHEDULER_ENABLED: bool = False
    STALE_JOB_TIMEOUT_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("PROVIDERS")
    @classmethod
    def _unique_provider_names(cls, value: list[ProviderConfig]) -> list[ProviderConfig]:
        """Provider names label health rows and attempts, so they must be unique."""

        names = [provider.name for provider in value]
        if len(names) != len(set(names)):
            raise ValueError("Provider names must be unique.")
        return value

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def _normalise_currency(cls, value: str) -> str:
        return value.strip().upper()

    def provider(self, name: str) -> ProviderConfig | None:
        for candidate in self.PROVIDERS:
            if candidate.name == name:
                return candidate
        return None


class AppInfo(BaseModel):
    name: str = "hedgepay"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "ProviderConfig",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
