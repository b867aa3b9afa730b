import os
import secrets
import logging

from dotenv import load_dotenv

load_dotenv()


def _require_in_production(var_name, default):
    """Return env var value. In production, warn loudly if still using default."""
    value = os.environ.get(var_name, "")
    if value:
        return value
    env = os.environ.get("FLASK_ENV", "development")
    if env != "development" and default:
        logging.getLogger(__name__).warning(
            "%s is using an insecure default. Set it via environment variable!", var_name
        )
    return default


def _database_url():
    """Return the SQLAlchemy-compatible database URL."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        # Fix Heroku/Render-style postgres:// -> postgresql://
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        return url
    return "sqlite:///tajer.db"


def _env_bool(var_name, default):
    return os.environ.get(var_name, str(default)).lower() in ("true", "on", "1", "yes")


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = _require_in_production(
        "SECRET_KEY", "dev-only-" + secrets.token_hex(16)
    )
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # JWT Authentication
    JWT_SECRET = _require_in_production(
        "JWT_SECRET", "dev-only-" + secrets.token_hex(32)
    )
    JWT_EXPIRES_DAYS = int(os.environ.get("JWT_EXPIRES_DAYS", "30"))

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Links placed in emails and Stripe redirects
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:10000").rstrip("/")
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")

    # CORS
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "https://tajernow.com,http://localhost:3000")

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_CONNECT_WEBHOOK_SECRET = os.environ.get("STRIPE_CONNECT_WEBHOOK_SECRET", "")
    STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS", "10"))
    STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "1"))
    STRIPE_CONNECT_COUNTRY = os.environ.get("STRIPE_CONNECT_COUNTRY", "US")
    CURRENCY = os.environ.get("CURRENCY", "usd")

    # Repair pricing
    REPAIR_DEPOSIT_AMOUNT = float(os.environ.get("REPAIR_DEPOSIT_AMOUNT", "20.0"))
    PLATFORM_FEE_RATE = float(os.environ.get("PLATFORM_FEE_RATE", "0.10"))
    PROVIDER_PAYOUT_RATE = float(os.environ.get("PROVIDER_PAYOUT_RATE", "0.90"))

    # Email: Resend (preferred) or SendGrid (legacy)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
    SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY", "")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "support@tajernow.com")
    EMAIL_FROM_NAME = os.environ.get("EMAIL_FROM_NAME", "Tajer")
    EMAIL_ASYNC = _env_bool("EMAIL_ASYNC", True)

    # ID uploads
    UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER") or os.path.join(
        os.path.dirname(os.path.abspath(__file__)), "uploads"
    )
    MAX_ID_IMAGE_SIZE = 6 * 1024 * 1024  # 6MB
    MAX_CONTENT_LENGTH = 20 * 1024 * 1024  # 20MB

    # Rate limiting
    RATELIMIT_ENABLED = _env_bool("RATELIMIT_ENABLED", True)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL") or "memory://"

    # Background scheduler
    ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", False)
    PAYOUT_SWEEP_MINUTES = int(os.environ.get("PAYOUT_SWEEP_MINUTES", "15"))

    # Error monitoring
    SENTRY_DSN = os.environ.get("SENTRY_DSN", "")

    # Server
    PORT = int(os.environ.get("PORT", "10000"))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")


class ProductionConfig(Config):
    """Production configuration"""
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


class TestingConfig(Config):
    """Testing configuration with isolated database and safe defaults"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SECRET_KEY = "test-secret-key"
    JWT_SECRET = "test-jwt-secret"
    APP_BASE_URL = "http://testserver"
    FRONTEND_URL = "http://frontend.test"
    CORS_ORIGINS = "*"

    STRIPE_SECRET_KEY = ""
    STRIPE_WEBHOOK_SECRET = ""
    STRIPE_CONNECT_WEBHOOK_SECRET = ""

    REPAIR_DEPOSIT_AMOUNT = 20.0
    PLATFORM_FEE_RATE = 0.10
    PROVIDER_PAYOUT_RATE = 0.90

    RESEND_API_KEY = ""
    SENDGRID_API_KEY = ""
    EMAIL_ASYNC = False

    RATELIMIT_ENABLED = False
    ENABLE_SCHEDULER = False
    SENTRY_DSN = ""
    LOG_LEVEL = "WARNING"


config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig,
}
