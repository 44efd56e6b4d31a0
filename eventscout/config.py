from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

DATA_DIR = Path(__file__).parent / "data"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


class Settings(BaseModel):
    # env-derived defaults are validated too
    model_config = ConfigDict(validate_default=True)

    # SQLite file path or a full SQLAlchemy URL
    database_path: str = Field(
        default_factory=lambda: _env_str("EVENTSCOUT_DB_PATH") or str(DATA_DIR / "eventscout.db")
    )

    # Batch processor
    batch_size: int = Field(default_factory=lambda: _env_int("EVENTSCOUT_BATCH_SIZE", 10), gt=0)
    due_jobs_limit: int = Field(default_factory=lambda: _env_int("EVENTSCOUT_DUE_JOBS_LIMIT", 5), gt=0)
    scoring_concurrency: int = Field(default_factory=lambda: _env_int("EVENTSCOUT_SCORING_CONCURRENCY", 5), gt=0)
    provider_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("EVENTSCOUT_PROVIDER_TIMEOUT", 60.0), gt=0
    )

    # Outbound task queue
    task_max_attempts: int = Field(default_factory=lambda: _env_int("EVENTSCOUT_TASK_MAX_ATTEMPTS", 3), gt=0)
    task_batch_limit: int = Field(default_factory=lambda: _env_int("EVENTSCOUT_TASK_BATCH_LIMIT", 20), gt=0)

    # LLM
    llm_provider: str = Field(default_factory=lambda: _env_str("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env_str("LLM_MODEL"))

    # HTTP host
    cron_secret: str = Field(default_factory=lambda: _env_str("CRON_SECRET"))
    public_rate_limit: int = Field(default_factory=lambda: _env_int("EVENTSCOUT_RATE_LIMIT", 30), gt=0)
    public_rate_window_seconds: float = Field(
        default_factory=lambda: _env_float("EVENTSCOUT_RATE_WINDOW", 60.0), gt=0
    )

    # Seating
    default_table_seats: int = 8
    default_event_capacity: int = 50

    @property
    def fan_out(self) -> int:
        """Concurrent provider calls per slice, never above the slice size."""
        return max(1, min(self.scoring_concurrency, self.batch_size))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
