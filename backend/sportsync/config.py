"""
backend/sportsync/config.py

Purpose:
    Central settings loading for the reconciliation and sync services.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "sportsync"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # Sportmonks v3
    SM_API_KEY: str = ""
    SPORTMONKS_BASE_URL: str = "https://api.sportmonks.com/v3"
    SPORTMONKS_PER_PAGE: int = 50
    SPORTMONKS_TIMEOUT_SECONDS: float = 60.0
    SPORTMONKS_MAX_RETRIES: int = 3
    SPORTMONKS_RETRY_BASE_DELAY: float = 2.0
    SPORTMONKS_MAX_PAGES: int = 500

    # Local store reads
    REPOSITORY_PAGE_SIZE: int = 500

    # Sync batches
    SYNC_CHUNK_SIZE: int = 8
    SYNC_ITEM_TIMEOUT_SECONDS: float = 15.0
    SYNC_LOCK_STALE_MINUTES: int = 30
    SYNC_ERROR_MESSAGE_MAX_CHARS: int = 500

    # Settlement trigger (empty URL = log-only engine)
    SETTLEMENT_WEBHOOK_URL: str = ""
    SETTLEMENT_WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
