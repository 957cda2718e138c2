from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables / .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "Agent Referral Ledger API"
    APP_VERSION: str = "1.0.0"
    # development | staging | production
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_COMMISSION_RATE: Decimal = Decimal("10.00")  # percent
    DEFAULT_SIGNUP_AMOUNT: Decimal = Decimal("25.00")

    PAYOUT_MIN_AMOUNT: Decimal = Decimal("20.00")
    PAYOUT_MAX_AMOUNT: Decimal = Decimal("100000.00")

    BULK_UPLOAD_MAX_ENTRY_AMOUNT: Decimal = Decimal("10000.00")
    BULK_MAX_ITEMS: int = 1000

    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: list[str] = ["*"]

    SEED_DEMO_DATA: bool = True

    def model_post_init(self, __context) -> None:
        if self.PAYOUT_MIN_AMOUNT <= 0:
            raise ValueError("PAYOUT_MIN_AMOUNT must be positive")
        if self.PAYOUT_MAX_AMOUNT < self.PAYOUT_MIN_AMOUNT:
            raise ValueError("PAYOUT_MAX_AMOUNT must not be below PAYOUT_MIN_AMOUNT")
        if not Decimal("0") <= self.DEFAULT_COMMISSION_RATE <= Decimal("100"):
            raise ValueError("DEFAULT_COMMISSION_RATE must be within [0, 100]")


@lru_cache
def get_settings() -> Settings:
    return Settings()
