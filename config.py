import os
from functools import lru_cache


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


class BaseConfig:
    ENVIRONMENT = "development"
    DEBUG = False

    # Security
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
    REFRESH_TOKEN_EXPIRE_DAYS = int(os.environ.get("REFRESH_TOKEN_EXPIRE_DAYS", 30))
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", 12))
    PASSWORD_MIN_LENGTH = int(os.environ.get("PASSWORD_MIN_LENGTH", 8))
    MAX_LOGIN_ATTEMPTS = int(os.environ.get("MAX_LOGIN_ATTEMPTS", 5))
    PASSWORD_RESET_EXPIRE_MINUTES = int(os.environ.get("PASSWORD_RESET_EXPIRE_MINUTES", 60))

    # Database
    DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./technofolio.db")

    # Domain rules
    NOTIFICATION_RETENTION_DAYS = int(os.environ.get("NOTIFICATION_RETENTION_DAYS", 30))
    DEFAULT_MAX_ABSENCES = int(os.environ.get("DEFAULT_MAX_ABSENCES", 150))
    CRITICAL_ABSENCE_RATIO = float(os.environ.get("CRITICAL_ABSENCE_RATIO", 0.8))
    MAX_RECOMMENDATIONS = int(os.environ.get("MAX_RECOMMENDATIONS", 10))
    SEED_CREDIT_CATEGORIES = _flag("SEED_CREDIT_CATEGORIES", "true")

    # Email
    SMTP_HOST = os.environ.get("SMTP_HOST", "")
    SMTP_PORT = int(os.environ.get("SMTP_PORT", 587))
    SMTP_USER = os.environ.get("SMTP_USER", "")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
    SMTP_USE_TLS = _flag("SMTP_USE_TLS", "true")
    MAIL_FROM = os.environ.get("MAIL_FROM", "Технофолио <noreply@technofolio.local>")
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")

    # HTTP
    RATE_LIMIT_ENABLED = _flag("RATE_LIMIT_ENABLED", "true")
    LOGIN_RATE_LIMIT = os.environ.get("LOGIN_RATE_LIMIT", "10/minute")
    CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

    # Bootstrap administrator
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")
    ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD")

    # Reports
    PDF_FONT_PATH = os.environ.get("PDF_FONT_PATH")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


class DevelopmentConfig(BaseConfig):
    ENVIRONMENT = "development"
    DEBUG = True


class TestingConfig(BaseConfig):
    ENVIRONMENT = "testing"
    DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", 4))
    RATE_LIMIT_ENABLED = False
    SEED_CREDIT_CATEGORIES = False
    SMTP_HOST = ""


class ProductionConfig(BaseConfig):
    ENVIRONMENT = "production"


_CONFIGS = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


@lru_cache()
def get_settings() -> BaseConfig:
    """Return the configuration class selected by ENVIRONMENT."""
    env = os.environ.get("ENVIRONMENT", "development").lower()
    return _CONFIGS.get(env, DevelopmentConfig)()
