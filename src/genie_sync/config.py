from __future__ import annotations

import os
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

API_BASE = "https://api2.learning-genie.com"
DEFAULT_TIMEZONE = "America/Los_Angeles"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser() if raw else default


class SyncSettings(BaseModel):
    """Runtime configuration for a Learning Genie sync run."""

    auth_path: Path = Field(default_factory=lambda: _env_path("AUTH_PATH", Path.cwd() / "auth.storage.json"))
    state_path: Path = Field(default_factory=lambda: _env_path("STATE_PATH", Path.cwd() / "sync-state.json"))
    outdir: Path = Field(default_factory=lambda: _env_path("OUTDIR", Path.cwd() / "downloads"))
    outfile: Path = Field(default_factory=lambda: _env_path("OUTFILE", Path.cwd() / "input.json"))

    api_base: str = Field(default_factory=lambda: os.getenv("LG_API_BASE", API_BASE))
    uid: Optional[str] = Field(default_factory=lambda: _env_optional("LG_UID"))
    request_timeout: float = Field(default_factory=lambda: float(os.getenv("LG_REQUEST_TIMEOUT", "30")))

    page_size: int = 50
    max_pages: int = 200
    max_retries: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0
    page_delay: float = 0.35
    note_category: Optional[str] = "report"
    include_video_book: bool = True

    max_assets: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    enrollment: Optional[str] = None

    timezone: Optional[str] = Field(default_factory=lambda: _env_optional("LOCAL_TZ"))
    default_timezone: str = DEFAULT_TIMEZONE

    download_concurrency: int = Field(default_factory=lambda: _env_int("LG_DOWNLOAD_CONCURRENCY", 6))
    exiftool_path: str = Field(default_factory=lambda: os.getenv("EXIFTOOL_PATH", "exiftool"))
    dry_run: bool = False
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @field_validator("max_assets")
    @classmethod
    def _max_assets_positive(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("max_assets must be a positive integer")
        return value

    @field_validator("page_size", "max_pages", "download_concurrency")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("page_delay", "max_retries", "retry_base_delay", "retry_max_delay")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @property
    def notes_url(self) -> str:
        return self.api_base.rstrip("/") + "/api/v1/Notes"

    @property
    def enrollments_url(self) -> str:
        return self.api_base.rstrip("/") + "/api/v1/Enrollments"


@lru_cache(maxsize=1)
def get_settings() -> SyncSettings:
    return SyncSettings()


__all__ = ["API_BASE", "DEFAULT_TIMEZONE", "SyncSettings", "get_settings"]
