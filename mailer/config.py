"""
Environment configuration for the campaign mailer
"""
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./mailer.db"
    base_url: str = "http://localhost:8000"

    # Sender identity
    mail_from: str = "noreply@contact-tables.com"
    mail_from_name: str = "Contact Tables"

    # SMTP transport (falls back to logging transport when unset)
    smtp_server: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    verify_ssl: bool = True

    # Auth
    cron_secret: Optional[str] = None
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Batching and throughput
    batch_size: int = 200
    batch_interval_minutes: int = 60
    max_batches_per_tick: int = 5
    send_concurrency: int = 3
    hourly_quota: int = 200
    stale_batch_minutes: int = 30

    stats_cache_ttl_seconds: int = 30
    log_level: str = "INFO"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_server and self.smtp_username and self.smtp_password)


def load_settings() -> Settings:
    """Build settings from the process environment"""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./mailer.db"),
        base_url=os.getenv("BASE_URL", "http://localhost:8000").rstrip("/"),
        mail_from=os.getenv("MAIL_FROM", "noreply@contact-tables.com"),
        mail_from_name=os.getenv("MAIL_FROM_NAME", "Contact Tables"),
        smtp_server=os.getenv("SMTP_SERVER"),
        smtp_port=_int_env("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        verify_ssl=os.getenv("VERIFY_SSL", "True").lower() == "true",
        cron_secret=os.getenv("CRON_SECRET"),
        jwt_secret_key=os.getenv("JWT_SECRET_KEY", "change-me"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        batch_size=_int_env("BATCH_SIZE", 200),
        batch_interval_minutes=_int_env("BATCH_INTERVAL_MINUTES", 60),
        max_batches_per_tick=_int_env("MAX_BATCHES_PER_TICK", 5),
        send_concurrency=_int_env("SEND_CONCURRENCY", 3),
        hourly_quota=_int_env("HOURLY_QUOTA", 200),
        stale_batch_minutes=_int_env("STALE_BATCH_MINUTES", 30),
        stats_cache_ttl_seconds=_int_env("STATS_CACHE_TTL_SECONDS", 30),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
