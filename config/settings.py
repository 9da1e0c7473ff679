"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. Engine settings
use the ``PRERESCUE_`` prefix; infrastructure settings use their
canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the PreRescue emergency engine.

    Environment variables are loaded from a ``.env`` file when present.
    Engine keys are prefixed with ``PRERESCUE_``; infra keys use their
    standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="PRERESCUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Storage ────────────────────────────────────────────────────────
    store_backend: Literal["memory", "redis"] = "memory"
    store_namespace: str = "prerescue:"
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Reconciliation ─────────────────────────────────────────────────
    reconcile_max_concurrency: int = Field(default=8, ge=1)
    reconcile_in_background: bool = True
    default_radius_miles: float = Field(default=10.0, gt=0)

    # ── Postal-code distance heuristic ─────────────────────────────────
    heuristic_miles_per_postal_unit: float = 0.1
    heuristic_region_penalty_miles: float = 50.0
    heuristic_max_miles: float = 500.0
    heuristic_postal_digits: int = Field(default=5, ge=1)

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION


# Module-level singleton; import ``settings`` from the app entry point.
settings = Settings()
