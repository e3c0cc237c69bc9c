from functools import lru_cache
from typing import Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from trendscreen.exceptions import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, frozen=True, extra="ignore")

    PROJECT_NAME: str = "TrendScreen API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # Database
    DATABASE_URL: str

    # Price / fundamentals provider
    DATA_API: str = "https://financialmodelingprep.com"
    FMP_API_KEY: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # console | json

    # Retry policy shared by provider and database calls
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    RETRY_MULTIPLIER: float = 2.0

    # Loader throttling
    PRICE_CONCURRENCY: int = 3
    PRICE_PAUSE_SECONDS: float = 0.3
    FUNDAMENTALS_CONCURRENCY: int = 4
    FUNDAMENTALS_PAUSE_SECONDS: float = 0.2

    @field_validator("DATABASE_URL")
    @classmethod
    def _postgres_url(cls, v: str) -> str:
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "postgres://")):
            raise ValueError("DATABASE_URL must be a postgresql:// URL")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def _log_format(cls, v: str) -> str:
        if v not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")
        return v

    @property
    def async_database_url(self) -> str:
        # Ensure we use async driver
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    def config_warnings(self) -> list[str]:
        warnings = []
        if self.FMP_API_KEY and len(self.FMP_API_KEY) < 10:
            warnings.append("FMP_API_KEY looks too short; check that it is a valid key")
        return warnings

    def require_provider_credentials(self) -> str:
        """Jobs that call the provider need an API key; the DB-only builders do not."""
        if not self.FMP_API_KEY:
            raise ConfigurationError("FMP_API_KEY is required for provider jobs")
        return self.FMP_API_KEY


def load_settings(**overrides) -> Settings:
    """
    Build the immutable settings object once at process start.
    Keyword overrides take precedence over the environment (used by tests).
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
