"""
Configuration management for the application.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./vantak_local.sqlite"

    @property
    def database_url_async(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    # Security (operator tokens)
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # Application
    APP_NAME: str = "Vantak OS"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    SEED_DEMO_DATA: bool = False

    # Frontend URL (checkout success/cancel redirects)
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe Checkout Configuration
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    CHECKOUT_CURRENCY: str = "usd"
    DEFAULT_PLATFORM_FEE_PERCENT: float = 1.5

    # Payment Terminal
    TERMINAL_AUTO_DISMISS_SECONDS: float = 4.0
    TERMINAL_MAX_AMOUNT: float = 99999.99
    TERMINAL_API_BASE_URL: str = "http://localhost:8000"

    # Recurring bookings
    RECURRING_DEFAULT_WEEKS: int = 16  # One semester

    # AI support quota (Starter tier only)
    AI_STARTER_DAILY_LIMIT: int = 5

    # Background reconciliation of unconfirmed checkout sessions
    PAYMENT_RECONCILE_INTERVAL_MINUTES: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = True


# Singleton instance - import this in other modules
settings = Settings()
