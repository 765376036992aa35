"""Runtime settings for g8r.

``G8rSettings`` is read once at startup (environment variables prefixed with
``G8R_`` and an optional ``.env`` file) and then passed explicitly to the
factory.  Nothing in the engine reads settings from a global.

Examples:
    >>> settings = G8rSettings(database_url="sqlite:///:memory:", max_concurrency=8)
    >>> settings.retry_max_attempts
    5

Tags:
    settings, configuration, pydantic, environment, g8r

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class G8rSettings(BaseSettings):
    """Settings for the store, engine, retry policy and scheduler.

    Fields
    ──────
    database_url         : Durable state store URL (SQLite or PostgreSQL)
    log_level            : Structlog log level
    max_concurrency      : Duties executing at once within one cycle
    max_concurrent_cycles: Reconciliation cycles running at once
    retry_*              : Default retry policy for handler calls
    lock_ttl_seconds     : Expiry of execution / source locks
    tick_interval_seconds: Scheduler poll interval
    workspace_dir        : Checkout directory for version-controlled sources
    """

    model_config = SettingsConfigDict(
        env_prefix="G8R_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    database_url: str = "sqlite:///g8r.db"
    database_echo: bool = False

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Engine ───────────────────────────────────────────────────
    max_concurrency: int = Field(default=4, ge=1)
    max_concurrent_cycles: int = Field(default=4, ge=1)
    lock_ttl_seconds: int = Field(default=3600, ge=1)

    # ── Retry policy ─────────────────────────────────────────────
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)
    retry_jitter: bool = False
    retry_max_elapsed: float = Field(default=600.0, gt=0)

    # ── Scheduler ────────────────────────────────────────────────
    tick_interval_seconds: float = Field(default=10.0, gt=0)
    default_reconcile_interval: int = Field(default=300, ge=1)
    workspace_dir: Path = Field(
        default_factory=lambda: Path.home() / ".g8r" / "workspace",
        description="Where version-controlled stack sources are checked out",
    )
