"""
Configuration classes for the billing service.

The active class is resolved from the APP_ENV environment variable by
get_config(). Values are read from the environment when the module is
imported, so tests override them through app.config instead.
"""

import os


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def _env_list(name, default):
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")
    ENVIRONMENT = "development"

    # Application
    APP_NAME = "CarApp Billing"
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = os.getenv("LOG_REQUESTS", "false").lower() == "true"

    # Persistence
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///carapp_billing.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Payment gateway (Bank of Georgia)
    GATEWAY_CLIENT_ID = os.getenv("BOG_CLIENT_ID")
    GATEWAY_CLIENT_SECRET = os.getenv("BOG_CLIENT_SECRET")
    GATEWAY_TOKEN_URL = os.getenv(
        "BOG_TOKEN_URL",
        "https://oauth2.bog.ge/auth/realms/bog/protocol/openid-connect/token",
    )
    GATEWAY_API_BASE_URL = os.getenv("BOG_API_BASE_URL", "https://api.bog.ge/payments/v1")
    GATEWAY_CHARGE_PATH = os.getenv("BOG_CHARGE_PATH", "/ecommerce/orders/recurring")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("BOG_TIMEOUT_SECONDS", "30"))
    GATEWAY_CALLBACK_URL = os.getenv("BOG_CALLBACK_URL")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "GEL")

    # Recurring billing
    BILLING_INTERVAL_SECONDS = int(os.getenv("BILLING_INTERVAL_SECONDS", "3600"))
    BILLING_LOCK_TTL_SECONDS = int(os.getenv("BILLING_LOCK_TTL_SECONDS", "3300"))
    BILLING_CLAIM_TTL_SECONDS = int(os.getenv("BILLING_CLAIM_TTL_SECONDS", "21600"))
    SUBSCRIPTION_CONTEXTS = _env_list(
        "SUBSCRIPTION_CONTEXTS", ("subscription", "test_subscription")
    )

    # Collaborators / observability
    PUSH_NOTIFICATION_URL = os.getenv("PUSH_NOTIFICATION_URL")
    METRICS_ENABLED = os.getenv("METRICS_ENABLED", "false").lower() == "true"
    SENTRY_DSN = os.getenv("SENTRY_DSN")


class DevelopmentConfig(BaseConfig):
    """
    Development configuration.
    """

    DEBUG = True
    SECRET_KEY = BaseConfig.SECRET_KEY or "dev-secret-key"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")


class TestingConfig(BaseConfig):
    TESTING = True
    ENVIRONMENT = "testing"
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    GATEWAY_CLIENT_ID = "test-client"
    GATEWAY_CLIENT_SECRET = "test-secret"
    GATEWAY_TIMEOUT_SECONDS = 5
    PUSH_NOTIFICATION_URL = None
    METRICS_ENABLED = False
    SENTRY_DSN = None


class ProductionConfig(BaseConfig):
    """
    Production configuration.
    """

    DEBUG = False
    ENVIRONMENT = "production"

    @classmethod
    def validate(cls):
        if not cls.SECRET_KEY:
            raise ConfigurationError("SECRET_KEY is required in production")
        if cls.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            raise ConfigurationError(
                "SQLite is not allowed in production. Use PostgreSQL or MySQL."
            )


def get_config(env=None):
    """
    Resolve and return the correct configuration class
    based on the APP_ENV environment variable.

    Supported values:
    - development
    - testing
    - production
    """

    env = (env or os.getenv("APP_ENV", "development")).lower()

    if env == "development":
        return DevelopmentConfig

    if env == "testing":
        return TestingConfig

    if env == "production":
        ProductionConfig.validate()
        return ProductionConfig

    raise ConfigurationError(f"Invalid APP_ENV value: {env}")
