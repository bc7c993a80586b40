"""Configuration settings for the Vroom sync backend."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    database_path: str = "vroom.db"
    backup_dir: str = "backups"  # LocalBackupStore root

    # Google Drive backups and Sheets mirror (local backups, no mirror when unset)
    google_service_account_file: str | None = None
    drive_folder_name: str = "Vroom Backups"

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 1 week

    # Sync
    sync_timeout_seconds: float = 60.0
    max_upload_bytes: int = 50 * 1024 * 1024  # 50 MB
    auto_sync_enabled: bool = True
    default_inactivity_minutes: int = 5

    # App
    debug: bool = False
    # Only these sources may set X-Forwarded-For for rate limiting
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
