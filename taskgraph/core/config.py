"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from taskgraph.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PARALLELISM,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_TIMEOUT_SECONDS,
)


class Settings(BaseSettings):
    """Engine settings driven entirely by TASKGRAPH_* environment variables."""

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_ttl: int = Field(default=86400, ge=60)

    # Execution Engine
    default_parallelism: int = Field(default=DEFAULT_PARALLELISM, ge=1, le=100)
    default_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    default_max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)
    retry_max_delay: float = Field(default=DEFAULT_RETRY_MAX_DELAY, ge=0)
    stop_grace_seconds: float = Field(default=5.0, ge=0)

    # API_CALL handler
    http_timeout: float = Field(default=30.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def use_redis(self) -> bool:
        """Redis is used only when enabled and a URL is configured."""
        return self.redis_enabled and bool(self.redis_url)

    model_config = {
        "env_prefix": "TASKGRAPH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }
