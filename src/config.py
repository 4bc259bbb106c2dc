from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every variable is prefixed with SAFECASE_ (e.g. SAFECASE_LOG_LEVEL) and
    may also come from a local .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="SAFECASE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    log_serialize: bool = False

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8000
    reload: bool = False
    cors_origins: str = "*"

    # Editor engine
    max_batch_commands: Optional[int] = 50
    seed_demo_case: bool = True

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def cors_origin_list(self) -> List[str]:
        """SAFECASE_CORS_ORIGINS is a comma-separated list"""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
