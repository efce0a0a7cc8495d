from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "fulfillment"
    POSTGRES_USER: str = "fulfillment"
    POSTGRES_PASSWORD: str = "fulfillment"
    # Full SQLAlchemy URL, wins over the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None

    SERVICE_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS_ON_STARTUP: bool = True

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE: int = 300

    BREVO_API_KEY: str = ""
    BREVO_API_URL: str = "https://api.brevo.com/v3/smtp/email"
    MAIL_SENDER_EMAIL: str = "orders@example-roastery.co.uk"
    MAIL_SENDER_NAME: str = "Example Roastery"
    ADMIN_NOTIFICATION_EMAIL: str = ""

    COMPANY_NAME: str = "Example Roastery Ltd"
    COMPANY_ADDRESS: str = "1 Roastery Lane, London"
    COMPANY_EMAIL: str = "hello@example-roastery.co.uk"
    COMPANY_VAT_NUMBER: str = ""

    DEFAULT_CURRENCY: str = "gbp"
    MAX_TX_RETRIES: int = 3
    TX_RETRY_BACKOFF_MS: int = 50
    MAX_ORDER_TOTAL: float = 1_000_000
    TOTALS_TOLERANCE: float = 0.01
    REFUND_TOLERANCE: float = 0.0001
    AUTO_REFUND_ON_STOCK_FAILURE: bool = True
    STALE_CLAIM_HOURS: int = 72

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def admin_recipients(self) -> list[str]:
        return [addr.strip() for addr in self.ADMIN_NOTIFICATION_EMAIL.split(",") if addr.strip()]

    def missing_required(self) -> list[str]:
        required = {
            "STRIPE_SECRET_KEY": self.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": self.STRIPE_WEBHOOK_SECRET,
            "BREVO_API_KEY": self.BREVO_API_KEY,
        }
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    return Settings()
