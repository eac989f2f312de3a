"""
Configuration management.

Loads settings from environment variables and .env file.
Prefix: CORTEX_
"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CORTEX_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    memory_root: Path = Field(default=Path("data/memory"), description="Memory root directory")
    backend: Literal["json", "sqlite"] = Field(default="json", description="Persistence backend")
    db_name: str = Field(default="memory.db", description="SQLite database name")

    # Retention limits
    max_short_term_entries: int = Field(default=50, ge=1, description="Short-term capacity")
    max_episodic_entries: int = Field(default=100, ge=1, description="Live conversation log size")
    max_summarized_entries: int = Field(default=500, ge=1, description="Summary ring size")
    summarization_threshold: int = Field(
        default=20, ge=1, description="Entries compacted into one summary"
    )

    # Refresh
    refresh_interval_ms: int = Field(
        default=10_000, ge=0, description="Minimum gap between disk refreshes"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level name")
    log_file: Path | None = Field(default=None, description="Optional log file")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize to an upper-case level name logging understands."""
        name = v.upper()
        if not isinstance(logging.getLevelName(name), int):
            raise ValueError(f"unknown log level: {v}")
        return name

    @property
    def db_path(self) -> Path:
        return self.memory_root / self.db_name


def get_settings() -> Settings:
    """Get settings instance from environment."""
    return Settings()
