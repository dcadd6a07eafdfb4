"""Configuration management using pydantic-settings."""

import logging

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "KB Governance"
    DEBUG: bool = False
    CORS_ORIGINS: list[str] = ["*"]

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./kb_governance.db"

    # Source knowledge base (Movidesk-style help desk API)
    SOURCE_API_URL: str = "https://api.movidesk.com/public/v1"
    SOURCE_API_TOKEN: str = ""
    SOURCE_SYSTEM: str = "MOVIDESK"  # Key used in menu mappings
    SOURCE_ARTICLE_URL: str = "https://example.movidesk.com/kb/pt-br/article/{id}/{slug}"
    SOURCE_REQUESTS_PER_SECOND: float = 5.0
    SOURCE_TIMEOUT: float = 30.0
    SOURCE_TICKET_CLIENT_ID: str = ""  # Requester attached to governance tickets
    SOURCE_TICKET_SERVICE: str = ""  # serviceFirstLevel for governance tickets
    SOURCE_TICKET_OWNER_TEAM: str = ""

    # Governance
    BUSINESS_TIMEZONE: str = "America/Sao_Paulo"  # SLA and working hours are computed here
    DEFAULT_SYSTEM_CODE: str = "GENERAL"  # Fallback classification
    SLA_DAYS_ERROR: int = 3
    SLA_DAYS_WARN: int = 15
    SLA_DAYS_INFO: int = 30
    SLA_DUE_SOON_DAYS: int = 2
    GOVERNANCE_RECENT_LIMIT: int = 200  # Articles analyzed after each run
    OUTDATED_MAX_DAYS: int = 365
    INCOMPLETE_MIN_CHARS: int = 500

    # Sync
    SYNC_PAGE_SIZE: int = 50  # Clamped to 10..200
    SYNC_MAX_PAGES: int = 1000  # Safety cap for full scans
    SYNC_FALLBACK_DAYS: int = 2
    SYNC_MAX_LOOKBACK_DAYS: int = 7
    SYNC_SURGICAL_PAGES: int = 5
    SYNC_SURGICAL_PAGE_SIZE: int = 50
    SYNC_PARALLEL: bool = False  # Bounded worker pool for full scans
    SYNC_WORKERS: int = 4
    SYNC_ITEM_TIMEOUT: float = 30.0  # Seconds before a parallel item counts as failed
    SYNC_MISSING_CUTOFF_HOURS: int = 2
    SYNC_COMMIT_CHUNK_SIZE: int = 50  # Missing-detection rows per transaction

    # Scheduler
    SYNC_SCHEDULER_ENABLED: bool = False
    SYNC_SCHEDULER_TICK_SECONDS: int = 30
    SYNC_RESPECT_WORKING_HOURS: bool = True

    @property
    def sla_days(self) -> dict[str, int]:
        """SLA window per severity."""
        return {
            "ERROR": self.SLA_DAYS_ERROR,
            "WARN": self.SLA_DAYS_WARN,
            "INFO": self.SLA_DAYS_INFO,
        }

    @model_validator(mode="after")
    def check_source_settings(self) -> "Settings":
        """Validate source API settings."""
        if not self.DEBUG and not self.SOURCE_API_TOKEN:
            logging.warning(
                "SOURCE_API_TOKEN is empty in non-debug mode; sync runs will fail to authenticate"
            )
        return self


settings = Settings()
