from functools import lru_cache
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="WIDGET_ENGINE_")

    environment: Literal["development", "test", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    dispatch_timeout_seconds: float = 30
    execution_timeout_seconds: float = 45
    query_result_rows_max: int = 1000

    rate_limit_default_interval_seconds: float = 0
    rate_limit_intervals: dict[str, float] = Field(default_factory=lambda: {"jira": 60.0})

    result_cache_max_entries: int = 500

    lookup_database_url: str | None = None
    encryption_key: str | None = None
    plugin_instances: list[dict[str, Any]] = Field(default_factory=list)
    widget_definitions_path: str | None = None

    log_external_queries: bool = False
    log_external_query_params: bool = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
