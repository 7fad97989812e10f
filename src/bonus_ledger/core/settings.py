from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./bonus_ledger.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Coupon issuance
    coupon_expiry_days: int = 30
    coupon_code_segments: int = 3
    coupon_code_segment_length: int = 4

    # Referral codes
    referral_code_length: int = 12

    # Shared retry cap for coupon and referral code generation
    code_generation_max_attempts: int = Field(default=10, ge=1)

    # Program statistics
    stats_active_window_days: int = 30

    # Bonus job scheduler
    bonus_job_scheduler_enabled: bool = False
    bonus_job_schedule_path: str = "config/schedules.toml"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
