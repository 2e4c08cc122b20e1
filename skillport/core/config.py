import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database configuration
    # Use env-provided DATABASE_URL; local SQLite file for development.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./skillport.db")

    # Redis configuration (live leaderboard snapshots + pub/sub)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Celery configuration
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

    # Leaderboard behaviour
    # "celery" defers recomputation to a worker, "sync" recomputes inline after the write commits
    LEADERBOARD_RECOMPUTE_MODE: str = os.getenv("LEADERBOARD_RECOMPUTE_MODE", "celery")
    LEADERBOARD_BROADCAST_TOP_N: int = int(os.getenv("LEADERBOARD_BROADCAST_TOP_N", "50"))
    LEADERBOARD_SNAPSHOT_TTL_SECONDS: int = int(os.getenv("LEADERBOARD_SNAPSHOT_TTL_SECONDS", str(7 * 24 * 60 * 60)))
    LEADERBOARD_REFRESH_INTERVAL_SECONDS: int = int(os.getenv("LEADERBOARD_REFRESH_INTERVAL_SECONDS", "60"))
    LEADERBOARD_MAX_PAGE_SIZE: int = 100

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    class Config:
        # Let BaseSettings read from project .env if present (local dev).
        env_file = ".env"


settings = Settings()
