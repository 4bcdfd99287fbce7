import os
from functools import lru_cache

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://fieldbook:fieldbook@db:5432/fieldbook",
    )
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Payment gateway
    stripe_secret_key: str | None = os.getenv("STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = os.getenv("STRIPE_WEBHOOK_SECRET")
    currency: str = os.getenv("CURRENCY", "gbp")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

    # Booking rules
    platform_commission_rate: float = float(os.getenv("PLATFORM_COMMISSION_RATE", "0.20"))
    max_advance_booking_days: int = int(os.getenv("MAX_ADVANCE_BOOKING_DAYS", "30"))

    # Slot locks
    slot_lock_ttl_minutes: int = int(os.getenv("SLOT_LOCK_TTL_MINUTES", "10"))
    slot_lock_sweep_interval_seconds: int = int(os.getenv("SLOT_LOCK_SWEEP_INTERVAL_SECONDS", "300"))

    # Recurring payment retries
    max_payment_retries: int = int(os.getenv("MAX_PAYMENT_RETRIES", "3"))
    payment_retry_delay_hours: int = int(os.getenv("PAYMENT_RETRY_DELAY_HOURS", "24"))
    payment_retry_sweep_interval_seconds: int = int(
        os.getenv("PAYMENT_RETRY_SWEEP_INTERVAL_SECONDS", "86400")
    )

    # Notifications and webhooks
    notifications_webhook_url: str | None = os.getenv("NOTIFICATIONS_WEBHOOK_URL")
    webhook_event_ttl_seconds: int = int(os.getenv("WEBHOOK_EVENT_TTL_SECONDS", "86400"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
