"""
Configuration settings for the MiniCRM campaign engine.
Loads from environment variables with validation.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "MiniCRM Campaign Engine"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    HOST: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"
    SECRET_KEY: str

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./minicrm_dev.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Task queue ("redis" for multi-process deployments, "memory" for a single process)
    QUEUE_BACKEND: str = "redis"
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_RECEIVE_TIMEOUT_SECONDS: float = 1.0
    RUN_WORKER_IN_PROCESS: bool = False

    # Ingestion
    INGEST_BATCH_SIZE: int = 100

    # Campaign dispatch
    AUDIENCE_CHUNK_SIZE: int = 500
    DEFAULT_RECIPIENT_NAME: str = "Customer"

    # Delivery status aggregation
    DELIVERY_BATCH_SIZE: int = 50
    DELIVERY_FLUSH_INTERVAL_SECONDS: float = 5.0

    # Vendor ("simulated" runs in-process, "http" posts to VENDOR_URL)
    VENDOR_MODE: str = "simulated"
    VENDOR_URL: str = "http://localhost:8000/api/vendor/send"
    DELIVERY_RECEIPT_URL: str = "http://localhost:8000/api/delivery-receipt"
    VENDOR_SUCCESS_RATE: float = 0.9
    VENDOR_MIN_DELAY_SECONDS: float = 1.0
    VENDOR_MAX_DELAY_SECONDS: float = 4.0

    def validate_production_settings(self):
        """Validate critical settings for production deployment."""
        if not self.DEBUG and self.QUEUE_BACKEND == "memory" and not self.RUN_WORKER_IN_PROCESS:
            raise ValueError(
                "QUEUE_BACKEND=memory requires RUN_WORKER_IN_PROCESS=true, "
                "otherwise enqueued tasks are never consumed."
            )
        if self.QUEUE_BACKEND not in ("redis", "memory"):
            raise ValueError(f"Unsupported QUEUE_BACKEND: {self.QUEUE_BACKEND}")
        if self.VENDOR_MODE not in ("simulated", "http"):
            raise ValueError(f"Unsupported VENDOR_MODE: {self.VENDOR_MODE}")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings loader with production validation."""
    settings = Settings()
    # Validate critical settings when not in debug mode
    if not settings.DEBUG:
        settings.validate_production_settings()
    return settings
