"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
import base64
from decimal import Decimal

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    # CORS: comma-separated (e.g. http://localhost:5173,https://market.example.com). Empty = defaults in main.py.
    cors_origins: str = ""
    # Shared key for trusted callers (frontend backend, operators). Sent as X-Service-Key.
    service_api_key: str  # Required, no default

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default
    # API process pool; each forked Celery worker process runs one task at a time and gets the smaller worker pool
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_worker_pool_size: int = 2
    db_worker_max_overflow: int = 2
    db_pool_recycle_seconds: int = 1800
    db_connect_timeout: int = 5
    db_statement_timeout_ms: int = 30000

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # STRIPE
    # ===========================================
    stripe_secret_key: str  # Required, no default
    stripe_webhook_secret: str  # Required, no default
    stripe_api_version: str = "2023-10-16"
    stripe_connect_country: str = "US"

    # ===========================================
    # TRADINGVIEW
    # ===========================================
    # 32-byte AES-256-GCM key for seller session cookies (raw 32 chars or base64 of 32 bytes)
    tradingview_encryption_key: str  # Required, no default
    tradingview_base_url: str = "https://www.tradingview.com"
    tradingview_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    # Session health sweep: skip sellers validated within this window; pause between checks
    tradingview_revalidate_hours: int = 6
    tradingview_health_check_delay_seconds: float = 2.0

    # ===========================================
    # MARKETPLACE LEDGER
    # ===========================================
    platform_fee_percent: Decimal = Decimal("10")
    clearance_days: int = 7
    payout_minimum: Decimal = Decimal("50")
    payout_currency: str = "usd"
    trial_default_days: int = 7
    grant_default_days: int = 365

    # ===========================================
    # INTERNAL SERVICES
    # ===========================================
    http_client_timeout: float = 30.0

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("platform_fee_percent")
    @classmethod
    def validate_fee_percent(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 100:
            raise ValueError("platform_fee_percent must be in [0, 100)")
        return v

    @field_validator("tradingview_encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """AES-256 needs exactly 32 key bytes."""
        if len(v.encode("utf-8")) == 32:
            return v
        try:
            if len(base64.b64decode(v, validate=True)) == 32:
                return v
        except ValueError:
            pass
        raise ValueError("tradingview_encryption_key must be 32 bytes (raw or base64)")

    @property
    def tradingview_key_bytes(self) -> bytes:
        raw = self.tradingview_encryption_key.encode("utf-8")
        if len(raw) == 32:
            return raw
        return base64.b64decode(self.tradingview_encryption_key)

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
