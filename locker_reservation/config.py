"""
Application settings (Pydantic Settings).

Every field can be overridden through a ``LOCKER_``-prefixed environment
variable or a ``.env`` file in the working directory.
"""
from datetime import timedelta
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOCKER_", env_file=".env", extra="ignore")

    data_dir: Path = Path("data")
    venues_file: Path | None = None

    max_duration_hours: float = 10
    cancellation_window_minutes: int = 60
    pending_ttl_minutes: int = 15

    sweep_interval_seconds: int = 60

    log_level: str = "INFO"
    log_dir: Path | None = None

    @field_validator("max_duration_hours", "sweep_interval_seconds", mode="after")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("cancellation_window_minutes", "pending_ttl_minutes", mode="after")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @property
    def max_duration(self) -> timedelta:
        return timedelta(hours=self.max_duration_hours)

    @property
    def cancellation_window(self) -> timedelta:
        return timedelta(minutes=self.cancellation_window_minutes)

    @property
    def pending_ttl(self) -> timedelta:
        return timedelta(minutes=self.pending_ttl_minutes)


def get_settings() -> Settings:
    return Settings()
