"""Engine settings.

``EngineSettings`` gathers the few knobs the engine reads from the
environment. Values come from ``PHASEGATE_*`` environment variables or a
``.env`` file; unknown variables are ignored so a shared ``.env`` never
breaks startup.

Fields
──────
log_level        : structlog log level
json_logs        : force JSON (True) / console (False) output, auto when unset
service_name     : ``service.name`` stamped on every log line
max_concurrency  : default width of a fan-out batch
weight_tolerance : allowed drift of Σ score weights away from 1.0
journal_dir      : when set, every run journal is written here as JSON lines

Examples:
    >>> from phasegate.core.settings import get_settings
    >>> get_settings().max_concurrency
    4
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EngineSettings(BaseSettings):
    """Settings shared by the executor, the CLI and logging setup."""

    model_config = SettingsConfigDict(
        env_prefix="PHASEGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None
    service_name: str = "phasegate"

    # ── Execution ────────────────────────────────────────────────
    max_concurrency: int = Field(default=4, ge=1, description="Default fan-out width")
    weight_tolerance: float = Field(
        default=0.01,
        ge=0.0,
        description="Allowed |sum(weights) - 1| before a configuration warning",
    )

    # ── Storage ──────────────────────────────────────────────────
    journal_dir: Path | None = Field(
        default=None,
        description="Directory for JSON-lines run journals",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return the process-wide settings instance."""
    return EngineSettings()


def reset_settings() -> None:
    """Drop the cached settings (tests and CLI overrides)."""
    get_settings.cache_clear()
