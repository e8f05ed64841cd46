"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Tutoring Marketplace"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes
    REDIS_STATS_TTL: int = 60

    # ── OAuth2 - Google ──────────────────────────────────────
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google/callback"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # ── Razorpay (wallet top-ups + payouts) ──────────────────
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_ACCOUNT_NUMBER: str = ""
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    PAYOUT_GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── Twilio ───────────────────────────────────────────────
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    SMS_DEFAULT_COUNTRY_CODE: str = "+234"

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@tutoring.example.com"
    EMAIL_FROM_NAME: str = "Tutoring Marketplace"

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Business Config ──────────────────────────────────────
    DEFAULT_CURRENCY: str = "NGN"
    DEFAULT_TIMEZONE: str = "Africa/Lagos"
    PLATFORM_COMMISSION_PERCENT: float = 10.0
    BOOKING_SLOT_STEP_MINUTES: int = 30
    BOOKING_MIN_DURATION_MINUTES: int = 30
    BOOKING_MAX_DURATION_MINUTES: int = 240
    # Pending reschedule / rebook requests lapse after these many days
    BOOKING_RESCHEDULE_EXPIRY_DAYS: int = 3
    BOOKING_REBOOK_EXPIRY_DAYS: int = 5
    SESSION_REMINDER_HOURS: int = 24

    VERIFICATION_REQUIRE_VIDEO: bool = True
    VERIFICATION_REQUIRE_DOCUMENTS: bool = True

    WITHDRAWAL_MINIMUM_AMOUNT: float = 1000.0
    WITHDRAWAL_DAILY_LIMIT: float = 500000.0
    WITHDRAWAL_MONTHLY_LIMIT: float = 5000000.0
    # "<type>:<amount>" where type is flat or percentage
    WITHDRAWAL_FEE_BANK_TRANSFER: str = "flat:100"
    WITHDRAWAL_FEE_MOBILE_MONEY: str = "percentage:1.5"
    WITHDRAWAL_FEE_PAYPAL: str = "percentage:2.5"
    AUTO_WITHDRAWAL_DEFAULT_THRESHOLD: float = 50000.0

    @field_validator("PLATFORM_COMMISSION_PERCENT")
    @classmethod
    def commission_in_range(cls, v: float) -> float:
        if not 0 <= v < 100:
            raise ValueError("PLATFORM_COMMISSION_PERCENT must be between 0 and 100")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def withdrawal_fee_config(self, method: str) -> Optional[tuple[str, float]]:
        """Parse the fee setting for a withdrawal method into (type, amount)."""
        raw = getattr(self, f"WITHDRAWAL_FEE_{method.upper()}", None)
        if not raw:
            return None
        fee_type, _, amount = raw.partition(":")
        return fee_type, float(amount or 0)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
