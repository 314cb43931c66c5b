"""
Application configuration with automatic environment detection
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """Application settings read from the environment"""

    # Environment detection
    ENV = os.getenv("ENV", "DEV").upper()
    IS_PRODUCTION = ENV == "PROD" or ENV == "PRODUCTION"
    IS_DEVELOPMENT = not IS_PRODUCTION

    # Server configuration
    HOST = os.getenv("HOST", "127.0.0.1")
    PORT = int(os.getenv("PORT", 8000))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./parceltrack.db")

    # Authentication (tokens are issued by the platform's auth service)
    JWT_SECRET = os.getenv("JWT_SECRET", "supersecret_fallback_key_change_in_production")
    AUTH_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256")

    # Carrier (Click & Drop order API)
    CARRIER_MODE = os.getenv("CARRIER_MODE", "live").lower()
    CARRIER_API_URL = os.getenv("CARRIER_API_URL", "https://api.parcel.royalmail.com")
    CARRIER_BEARER_TOKEN = os.getenv("CARRIER_BEARER_TOKEN", "")
    CARRIER_TIMEOUT_SEC = float(os.getenv("CARRIER_TIMEOUT_SEC", "15"))
    CARRIER_MAX_RETRIES = int(os.getenv("CARRIER_MAX_RETRIES", "2"))
    CARRIER_BATCH_LIMIT = int(os.getenv("CARRIER_BATCH_LIMIT", "100"))  # carrier API limit per call

    # Tracking reconciliation schedule
    TRACKING_SCHEDULER_ENABLED = _flag("TRACKING_SCHEDULER_ENABLED", "true")
    TRACKING_INTERVAL_SEC = int(os.getenv("TRACKING_INTERVAL_SEC", "3600"))  # hourly
    TRACKING_FIRST_DELAY_SEC = int(os.getenv("TRACKING_FIRST_DELAY_SEC", "120"))

    # Job delivery retries (infrastructure failures only)
    JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
    JOB_BACKOFF_BASE_SEC = float(os.getenv("JOB_BACKOFF_BASE_SEC", "2.0"))

    # Status-change email (optional)
    SMTP_HOST = os.getenv("SMTP_HOST", "")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
    SMTP_USE_TLS = _flag("SMTP_USE_TLS", "true")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@parceltrack.local")

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if IS_PRODUCTION else "DEBUG")

    # API Configuration
    API_PREFIX = "/api"

    def __str__(self):
        return f"Settings(ENV={self.ENV}, IS_PRODUCTION={self.IS_PRODUCTION}, CARRIER_MODE={self.CARRIER_MODE})"

# Global settings instance
settings = Settings()
