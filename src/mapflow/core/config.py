"""
Centralized settings for mapflow.

:class:`MapflowSettings` is the single validated, cached source of truth
for the ledger database, the definitions file, the worker pool, the retry
policy and the scheduler cadence.  All fields can be set through
``MAPFLOW_*`` environment variables (e.g. ``MAPFLOW_MAX_WORKERS=8``) or a
``.env`` file.

Tags:
    mapflow, configuration, settings, pydantic, caching, validation
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MapflowSettings(BaseSettings):
    """Mapflow engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MAPFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///mapflow.db", description="Run ledger database")
    definitions_path: str = Field(default="mapflow.yaml", description="YAML definitions document")

    # ── Execution ────────────────────────────────────────────────
    max_workers: int = Field(default=4, description="Parallel steps per execution")

    # ── Retry ────────────────────────────────────────────────────
    retry_max_attempts: int = Field(default=3, description="Attempts per step, including the first")
    retry_base_delay: float = Field(default=0.5)
    retry_max_delay: float = Field(default=30.0)
    retry_jitter: bool = Field(default=True)

    # ── Scheduler ────────────────────────────────────────────────
    scheduler_interval_seconds: float = Field(default=10.0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @model_validator(mode="after")
    def _validate_ranges(self) -> MapflowSettings:
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry delays must satisfy 0 <= base_delay <= max_delay")
        if self.scheduler_interval_seconds <= 0:
            raise ValueError("scheduler_interval_seconds must be > 0")
        if self.log_format not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return self

    @property
    def json_logs(self) -> bool:
        return self.log_format == "json"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, MapflowSettings] = {}


def get_settings(*, _force_reload: bool = False) -> MapflowSettings:
    """Load, validate, and cache a :class:`MapflowSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = MapflowSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Drop the cached settings (tests, config reload)."""
    _settings_cache.clear()


__all__ = ["MapflowSettings", "get_settings", "clear_settings_cache"]
