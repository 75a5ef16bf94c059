"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    log_format: str = "text"

    # Dispatch store
    dispatch_db_path: str = "./data/dispatch.db"

    # Tenancy / auth
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""

    # Driver-app trip status feed (polled)
    trip_status_feed_url: str = ""
    trip_status_feed_token: str = ""
    trip_status_feed_timeout_seconds: float = 12.0

    def normalized_log_format(self) -> str:
        fmt = (self.log_format or "").strip().lower()
        return fmt if fmt in {"text", "json"} else "text"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
