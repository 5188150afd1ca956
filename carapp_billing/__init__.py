"""
CarApp billing service: Flask application factory.
"""

import sys
from typing import Optional

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from carapp_billing.config import ConfigurationError, get_config
from carapp_billing.errors import register_error_handlers
from carapp_billing.extensions import init_extensions
from carapp_billing.logging_config import setup_logging
from carapp_billing import models  # noqa: F401  registers tables before create_all()
from carapp_billing.observability.metrics import register_metrics
from carapp_billing.routes import register_blueprints
from carapp_billing.utils.request_id import init_request_id_middleware

__version__ = "1.0.0"


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")

    if sentry_dsn and app.config.get("ENVIRONMENT") == "production":
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,
            environment="production",
            release=__version__,
            send_default_pii=False,
        )
        app.logger.info("Sentry error tracking initialized")


def create_app(config_name: Optional[str] = None) -> Flask:
    """
    Application factory.

    Args:
        config_name: development, testing or production. Defaults to APP_ENV.

    Raises:
        ConfigurationError: unknown environment or invalid production settings
        AuthConfigError: gateway client id/secret are not configured
    """
    app = Flask(__name__)

    try:
        config = get_config(config_name)
        app.config.from_object(config)
    except ConfigurationError as e:
        print(f"CRITICAL: Configuration error: {str(e)}", file=sys.stderr)
        raise

    setup_logging(app)
    app.logger.info(f"Starting billing service in {app.config.get('ENVIRONMENT')} mode")

    setup_sentry(app)
    init_request_id_middleware(app)
    init_extensions(app)

    register_error_handlers(app)
    register_blueprints(app)
    register_metrics(app)

    app.logger.info("Billing service initialized")
    return app
