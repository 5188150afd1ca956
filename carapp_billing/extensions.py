# carapp_billing/extensions.py
"""
Flask extensions initialization module.
Holds the shared SQLAlchemy and Flask-Migrate handles, the redis client and
the process-wide payment gateway components.
"""

import logging

import redis
from flask import current_app
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
migrate = Migrate()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize extensions and gateway components for the application."""

    db.init_app(app)
    migrate.init_app(app, db)
    logger.info("SQLAlchemy and migrations initialized")

    if not app.config.get("TESTING"):
        init_redis(app)

    # Missing gateway credentials are fatal here, at startup.
    init_gateway(app)

    if app.config.get("ENVIRONMENT") in ("development", "testing"):
        with app.app_context():
            db.create_all()

    logger.info("All extensions initialized successfully")
    return app


def init_redis(app):
    """Initialize the redis connection used for the billing run lock."""
    global redis_client
    try:
        redis_client = redis.from_url(
            app.config.get("REDIS_URL", "redis://localhost:6379/0"),
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        redis_client.ping()
        logger.info("Redis initialized successfully")
    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        if app.config.get("ENVIRONMENT") == "production":
            raise
        redis_client = None


def get_redis():
    """Return the shared redis client, connecting lazily outside Flask startup."""
    global redis_client
    if redis_client is None:
        url = current_app.config.get("REDIS_URL", "redis://localhost:6379/0")
        redis_client = redis.from_url(url, socket_timeout=5, socket_connect_timeout=5)
    return redis_client


def init_gateway(app):
    """Build the credential cache, gateway client and notifier once per process."""
    from carapp_billing.gateway.client import GatewayClient
    from carapp_billing.gateway.credentials import CredentialCache
    from carapp_billing.services.notification_service import NotificationService

    credentials = CredentialCache(
        client_id=app.config.get("GATEWAY_CLIENT_ID"),
        client_secret=app.config.get("GATEWAY_CLIENT_SECRET"),
        token_url=app.config["GATEWAY_TOKEN_URL"],
        timeout=app.config.get("GATEWAY_TIMEOUT_SECONDS", 30),
    )
    gateway = GatewayClient(
        credentials=credentials,
        base_url=app.config["GATEWAY_API_BASE_URL"],
        charge_path=app.config["GATEWAY_CHARGE_PATH"],
        timeout=app.config.get("GATEWAY_TIMEOUT_SECONDS", 30),
        callback_url=app.config.get("GATEWAY_CALLBACK_URL"),
        app_base_url=app.config.get("APP_BASE_URL"),
    )
    notifier = NotificationService(
        push_url=app.config.get("PUSH_NOTIFICATION_URL"),
    )

    app.extensions["billing.credentials"] = credentials
    app.extensions["billing.gateway"] = gateway
    app.extensions["billing.notifier"] = notifier
    logger.info("Payment gateway components initialized")
