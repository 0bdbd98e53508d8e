from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str) -> str:
    value = os.getenv(f"JURY_{name}", "").strip()
    return value or default


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: _env("DATABASE_URL", f"sqlite:///{DATA_DIR / 'jury.db'}")
    )

    # Lease defaults (minutes)
    lock_duration_minutes: int = Field(
        default_factory=lambda: int(_env("LOCK_DURATION_MINUTES", "60")), ge=1
    )
    lock_extension_minutes: int = Field(
        default_factory=lambda: int(_env("LOCK_EXTENSION_MINUTES", "30")), ge=1
    )
    # 0 disables the background sweep
    lock_sweep_seconds: int = Field(
        default_factory=lambda: int(_env("LOCK_SWEEP_SECONDS", "300")), ge=0
    )

    comments_threshold: float = Field(
        default_factory=lambda: float(_env("COMMENTS_THRESHOLD", "70"))
    )
    default_rubric: str = Field(default_factory=lambda: _env("DEFAULT_RUBRIC", "percentage"))
    max_applications_per_judge: int = Field(
        default_factory=lambda: int(_env("MAX_APPLICATIONS_PER_JUDGE", "10")), ge=1
    )

    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
