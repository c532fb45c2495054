"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "plan-engine"
    app_env: str = "dev"
    log_level: str = "INFO"
    catalog_path: str = ""
    service_endpoints: dict[str, str] = Field(default_factory=dict)
    oracle_provider: str = "openai"
    oracle_model: str = "gpt-4o-mini"
    oracle_base_url: str = "https://api.openai.com/v1"
    oracle_timeout_s: float = Field(default=20.0, ge=0.5)
    oracle_max_retries: int = Field(default=1, ge=0)
    oracle_backoff_s: float = Field(default=0.2, ge=0.0)
    oracle_trace: bool = False
    openai_api_key: str = ""
    tool_timeout_s: float = Field(default=10.0, ge=0.01)
    tool_max_attempts: int = Field(default=3, ge=1)
    tool_backoff_base_s: float = Field(default=0.5, ge=0.0)
    tool_backoff_max_s: float = Field(default=8.0, ge=0.0)
    max_parallel_steps: int = Field(default=4, ge=1)
    payment_timeout_s: float = Field(default=900.0, gt=0.0)
    seconds_per_step: float = Field(default=3.0, ge=0.0)
    enrich_params: bool = False

    model_config = SettingsConfigDict(
        env_prefix="PLAN_ENGINE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_catalog_path(self) -> Path | None:
        if not self.catalog_path:
            return None
        path = Path(self.catalog_path)
        return path if path.is_absolute() else PROJECT_ROOT / path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
