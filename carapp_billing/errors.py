"""
Billing error taxonomy and the Flask handlers that render it.

Gateway and persistence failures are raised as one of the typed errors below;
nothing outside carapp_billing.gateway inspects gateway message text.
"""

import logging
import traceback

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""

    code = "BILLING_ERROR"
    http_status = 500

    def __init__(self, message=None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)


class AuthConfigError(BillingError):
    """Gateway client id/secret are not configured."""

    code = "AUTH_CONFIG_ERROR"


class AuthExchangeError(BillingError):
    """The OAuth client-credentials exchange with the gateway failed."""

    code = "AUTH_EXCHANGE_ERROR"
    http_status = 502

    def __init__(self, message=None, status_code=None, **context):
        self.status_code = status_code
        super().__init__(message, **context)


class GatewayError(BillingError):
    """The payment gateway rejected or failed a request."""

    code = "GATEWAY_ERROR"
    http_status = 502

    def __init__(self, message=None, status_code=None, operation=None, **context):
        self.status_code = status_code
        self.operation = operation
        super().__init__(message, **context)


class InstrumentNotFoundError(GatewayError):
    """The gateway could not resolve the parent order id to a saved card."""

    code = "INSTRUMENT_NOT_FOUND"


class LedgerError(BillingError):
    """Persisting or reading a payment record failed."""

    code = "LEDGER_ERROR"


class StoreError(BillingError):
    """Persisting or reading a subscription failed."""

    code = "STORE_ERROR"


class InvalidStateTransition(BillingError):
    """The requested subscription lifecycle change is not allowed."""

    code = "INVALID_STATE_TRANSITION"
    http_status = 409


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    http_status = 404


def register_error_handlers(app):
    @app.errorhandler(BillingError)
    def handle_billing_error(e):
        level = logging.ERROR if e.http_status >= 500 else logging.WARNING
        logger.log(
            level,
            f"{e.code}: {e.message}",
            extra={"path": request.path, "error_code": e.code},
        )
        return jsonify({
            "error": e.code,
            "message": e.message,
            "status_code": e.http_status,
        }), e.http_status

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        """
        Handles known HTTP errors (404, 401, 403, etc.)
        """
        return jsonify({
            "error": e.name,
            "message": e.description,
            "status_code": e.code,
        }), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        """
        Handles all unexpected server errors
        Prevents stack trace leakage in production
        """
        logger.error("Unhandled Exception:")
        logger.error(traceback.format_exc())

        return jsonify({
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again later.",
            "status_code": 500,
        }), 500
