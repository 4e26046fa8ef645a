"""Application configuration management."""

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calmesh.db"

    # Encryption
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""

    # Runtime features
    enable_webhooks: bool = True
    enable_heuristic_matching: bool = True

    # Rate limiting
    webhook_rate_limit_per_minute: int = 120

    # Job queue
    queue_concurrency: int = 4
    queue_rate_per_second: float = 10.0
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 5.0
    per_calendar_min_interval_seconds: float = 1.0

    # Scheduled jobs
    sync_interval_minutes: int = 15
    webhook_renewal_hours: int = 6
    token_refresh_minutes: int = 30

    # Reconciliation
    self_reflection_window_seconds: int = 60
    heuristic_match_window_minutes: int = 60

    # Google Calendar
    sync_engine_id: str = "calmesh"
    busy_block_title: str = "Busy"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class GoogleOAuthConfig(BaseModel):
    """OAuth client configuration handed to the token vault at startup."""

    client_id: str
    client_secret: str
    redirect_uri: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleOAuthConfig":
        """Build the OAuth config from application settings."""
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
        )

    def is_configured(self) -> bool:
        """Check whether client credentials are present."""
        return bool(self.client_id.strip() and self.client_secret.strip())


def get_encryption_key(key_file: Optional[str] = None) -> bytes:
    """Load encryption key from file."""
    key_file = key_file or get_settings().encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines that editors append; binary keys may contain whitespace bytes
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key
