"""
Application settings and configuration.
All secrets are loaded from environment variables.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class UnconfirmedPolicy(str, Enum):
    """What the scanner does with a task due for a recipient who has not opted in yet."""
    SKIP = "skip"    # record the occurrence as failed and advance
    DEFER = "defer"  # leave it due until the recipient confirms
    SEND = "send"    # send anyway


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Twilio Configuration
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_sms_number: str = ""  # E.164 sender, e.g. +14155238886

    # Database - Use DATA_DIR for a persistent volume
    data_dir: str = "."

    @property
    def database_url(self) -> str:
        """Database URL with support for persistent volumes."""
        return f"sqlite+aiosqlite:///{self.data_dir}/checkin.db"

    # Application Settings
    debug: bool = False
    validate_twilio_signature: bool = True

    # Default zone for reminders created without one
    timezone: str = "America/Los_Angeles"

    # Due-item scanner
    scan_interval_seconds: int = 60
    scan_window_seconds: int = 120
    missed_batch_size: int = 50
    send_missed_occurrences: bool = True
    scan_concurrency: int = 4
    stale_claim_minutes: int = 10
    unconfirmed_policy: UnconfirmedPolicy = UnconfirmedPolicy.SKIP
    worker_id: str = ""

    # Carrier
    delivery_timeout_seconds: float = 5.0

    # Inbound replies
    response_window_minutes: int = 30
    follow_up_delay_minutes: int = 30
    classifier_vocabulary_path: Optional[str] = None

    @model_validator(mode="after")
    def check_scan_window(self) -> "Settings":
        if self.scan_window_seconds <= self.scan_interval_seconds:
            raise ValueError(
                "scan_window_seconds must be larger than scan_interval_seconds"
            )
        if self.scan_concurrency < 1:
            raise ValueError("scan_concurrency must be at least 1")
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
