from __future__ import annotations

import os
import tempfile

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "grantfinder", "grantfinder.sqlite3")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from exc


class ServiceSettings(BaseModel):
    database_path: str = DEFAULT_DB_PATH
    target_count: int = Field(default=10, ge=1, le=200)
    max_page_size: int = Field(default=100, ge=1)
    batch_multiplier: int = Field(default=2, ge=1)
    fallback_multiplier: int = Field(default=3, ge=1)

    @classmethod
    def from_env(cls) -> ServiceSettings:
        return cls(
            database_path=os.getenv("GRANTFINDER_DB_PATH", "").strip() or DEFAULT_DB_PATH,
            target_count=_env_int("GRANTFINDER_TARGET_COUNT", 10),
            max_page_size=_env_int("GRANTFINDER_MAX_PAGE_SIZE", 100),
            batch_multiplier=_env_int("GRANTFINDER_BATCH_MULTIPLIER", 2),
            fallback_multiplier=_env_int("GRANTFINDER_FALLBACK_MULTIPLIER", 3),
        )
