from typing import List
from pydantic_settings import BaseSettings
from pydantic import AliasChoices, Field

class Settings(BaseSettings):
    PROJECT_NAME: str = "TAP Payments API"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./tap_payments.db"
    DB_TIMEOUT_SECONDS: float = 10.0

    # Razorpay
    RAZORPAY_KEY_ID: str = "rzp_test_placeholder"
    RAZORPAY_KEY_SECRET: str = Field("rzp_secret_placeholder", validation_alias=AliasChoices("RAZORPAY_KEY_SECRET", "RAZORPAY_SECRET"))
    RAZORPAY_WEBHOOK_SECRET: str = "webhook_secret"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Reconciliation behaviour
    ALLOW_AMOUNT_ROUNDING: bool = False
    VERIFY_CROSS_CHECK_PAYMENT: bool = False

    CORS_ORIGINS: List[str] = ["*"]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

def get_settings() -> Settings:
    return settings
