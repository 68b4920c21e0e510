from decimal import Decimal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Campus Billing"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./campus.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Stripe settings
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_member_price_id: str | None = None  # platform price for one billable member
    stripe_product_id: str | None = None  # product that custom-rate prices are attached to

    # Pricing fallbacks, used when the gateway price cannot be fetched
    default_rate_per_member: Decimal = Decimal("15.00")
    default_currency: str = "USD"
    default_billing_cycle: str = "yearly"
    price_cache_ttl_seconds: int = 300

    # Gateway retry policy
    gateway_max_attempts: int = 3
    gateway_backoff_base_seconds: float = 0.5
    gateway_backoff_max_seconds: float = 8.0

    # Member lifecycle
    grace_period_days: int = 30
    deletion_warning_days: int = 7
    lifecycle_jobs_enabled: bool = True
    graduation_job_interval_hours: int = 24
    warning_job_interval_hours: int = 24
    deletion_job_interval_hours: int = 24

    # Redis (session store, deletion queue)
    redis_url: str | None = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    session_expire_seconds: int = 3600
    deletion_queue_key: str = "queue:account_deletion"

    # SMTP settings
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str = "noreply@campus.local"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
