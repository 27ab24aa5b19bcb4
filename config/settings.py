"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Cache settings
    cache_enabled: bool = True
    cache_backend: Literal["file", "memory", "sqlite"] = "file"
    cache_directory: Path = Path("./cache")

    # Expiry: fixed lifetime and/or recurring refresh schedule
    # e.g. CACHE_REFRESH_SCHEDULE="0 6,18 1-31 1-12 1-7 2024-2030"
    cache_ttl_seconds: Optional[int] = 300
    cache_refresh_schedule: Optional[str] = None
    cache_schedule_timezone: str = "UTC"

    # Transmission
    cache_compress: bool = True
    cache_compress_level: int = 6
    cache_content_type: str = "text/html; charset=utf-8"

    # Non-GET requests always invalidate; optionally reject them too
    cache_reject_unsafe_methods: bool = False

    # Paths served straight from the app
    cache_exclude_paths: List[str] = ["/health", "/version", "/cache/stats"]

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
