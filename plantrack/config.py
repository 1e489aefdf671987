"""Application configuration.

Configuration is loaded from environment variables with the ``PLANTRACK_``
prefix, e.g. ``PLANTRACK_PROJECT_ROOT`` or ``PLANTRACK_ORDERED=false``.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """PlanTrack settings."""

    model_config = SettingsConfigDict(
        env_prefix="PLANTRACK_",
        env_file=None,
        extra="ignore",
    )

    # Workspace
    project_root: Optional[Path] = Field(default=None)
    storage_dir: str = Field(default=".plantrack", min_length=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    # Tracking defaults
    ordered: bool = Field(default=True)
    lenient_numbering: bool = Field(default=False)
    skipped_counts_as_done: bool = Field(default=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
