from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # ── Service ───────────────────────────────
    APP_NAME: str = "QuestionFlow Realtime Engine"
    API_PORT: int = 5001
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # ── Database ──────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./questionflow.db"
    REDIS_URL: str = ""

    # ── Doubts ────────────────────────────────
    ANONYMOUS_NAME: str = "Anonymous"
    SIMILARITY_THRESHOLD: float = 0.6     # Jaccard overlap to count as duplicate
    SIMILARITY_MAX_CANDIDATES: int = 500  # Most recent canonical doubts scanned

    # ── Confusion ─────────────────────────────
    CONFUSION_WINDOW_SECONDS: int = 300
    CONFUSION_CACHE_TTL_SECONDS: int = 5

    # ── Realtime ──────────────────────────────
    WS_SEND_QUEUE_SIZE: int = 256

    class Config:
        env_file = ".env"
        case_sensitive = True
        env_file_encoding = 'utf-8'


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance - cached to avoid re-reading .env on every request"""
    return Settings()


# Singleton instance for convenience
settings = get_settings()
