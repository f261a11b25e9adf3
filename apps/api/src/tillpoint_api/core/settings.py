from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    database_url: str = "sqlite+aiosqlite:///./tillpoint.db"
    database_echo: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Operator surface security
    loyalty_api_key: str = ""

    # Ledger optimistic concurrency
    ledger_max_attempts: int = Field(default=3, ge=1)
    ledger_retry_base_delay_seconds: float = Field(default=0.05, ge=0)
    ledger_retry_max_delay_seconds: float = Field(default=1.0, ge=0)

    # Redemption issuance
    redemption_code_prefix: str = "RWD"
    redemption_code_max_attempts: int = Field(default=5, ge=1)
    redemption_validity_days: int = Field(default=30, ge=1)

    # Program defaults used when an account is enrolled without an explicit program
    default_program_name: str = "Default Loyalty Program"
    default_points_per_currency: float = 1.0
    default_redemption_rate: float = 0.01

    # Loyalty job scheduler
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"

    # Tracing
    tracing_enabled: bool = True

    @field_validator("redemption_code_prefix", mode="before")
    @classmethod
    def _normalize_code_prefix(cls, value: object) -> str:
        if value is None:
            return "RWD"
        text = str(value).strip().upper()
        return text or "RWD"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
