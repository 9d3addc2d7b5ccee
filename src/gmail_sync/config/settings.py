"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailSyncSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Database
    database_path: Path = Path("data/gmail_sync.db")

    # Batching
    batch_size: int = 100
    max_batch_size: int = 500
    excluded_query: str = "-in:spam -in:trash"

    # Rate limiting & retry
    inter_batch_delay_seconds: float = 0.25
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    num_retries: int = 3

    # Progress & telemetry
    progress_save_interval: int = 10
    max_detailed_errors: int = 50
    max_api_calls: int = 20

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and credentials directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
