from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    SERVICE_NAME: str = "payments-service"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "hera"
    POSTGRES_USER: str = "hera"
    POSTGRES_PASSWORD: str = "hera"
    # Full SQLAlchemy URL; overrides the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    MPESA_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = ""
    MPESA_TIMEOUT_SECONDS: float = 20.0
    MPESA_TOKEN_SKEW_SECONDS: int = 60
    MPESA_TRANSACTION_DESC: str = "Hera Collection Purchase"

    NOTIFICATIONS_SERVICE_URL: Optional[str] = None

    PAYMENT_STALE_AFTER_MINUTES: int = 5
    PAYMENT_POLL_INTERVAL_SECONDS: int = 30

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    def mpesa_settings(self) -> dict:
        return {
            "MPESA_CONSUMER_KEY": self.MPESA_CONSUMER_KEY,
            "MPESA_CONSUMER_SECRET": self.MPESA_CONSUMER_SECRET,
            "MPESA_SHORTCODE": self.MPESA_SHORTCODE,
            "MPESA_PASSKEY": self.MPESA_PASSKEY,
            "MPESA_CALLBACK_URL": self.MPESA_CALLBACK_URL,
        }

@lru_cache
def get_settings() -> Settings:
    return Settings()
