from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/segmentflow"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Redis (queues, progress records, cache)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Commerce platform API
    COMMERCE_API_VERSION: str = "2024-01"
    COMMERCE_API_TIMEOUT: float = 30.0
    COMMERCE_API_MAX_RETRIES: int = 3

    # Pipeline tuning
    SYNC_BATCH_SIZE: int = 250
    RFM_BATCH_SIZE: int = 100
    CHURN_BATCH_SIZE: int = 50
    SEGMENT_REFRESH_DELAY_MS: int = 1000
    STALE_JOB_THRESHOLD_MS: int = 3600000
    WORKER_POLL_INTERVAL: float = 1.0

    # Error tracking
    SENTRY_DSN: str | None = None

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    VERSION: str = "0.1.0"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def sqlalchemy_echo(self) -> bool:
        """Never echo SQL outside of local debugging."""
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
