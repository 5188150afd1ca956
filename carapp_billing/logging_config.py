# carapp_billing/logging_config.py
import logging
import logging.config
import os
from datetime import datetime

from flask import g, has_request_context, request
from pythonjsonlogger import jsonlogger


class RequestIdFilter(logging.Filter):
    """
    Inject request_id into every log record if present.
    """

    def filter(self, record):
        if has_request_context():
            record.request_id = getattr(g, "request_id", None)
        else:
            record.request_id = None
        return True


def _logging_config(log_level, with_request_id):
    fmt = "%(asctime)s %(levelname)s %(name)s %(message)s "
    if with_request_id:
        fmt += "%(request_id)s "
    fmt += "%(module)s %(funcName)s %(lineno)d"

    handler = {
        "class": "logging.StreamHandler",
        "formatter": "json",
    }
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "fmt": fmt,
            },
        },
        "handlers": {"default": handler},
        "root": {
            "level": log_level,
            "handlers": ["default"],
        },
        "loggers": {
            "urllib3": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "werkzeug": {"level": "WARNING"},
        },
    }
    if with_request_id:
        config["filters"] = {"request_id": {"()": RequestIdFilter}}
        handler["filters"] = ["request_id"]
    return config


def setup_logging(app):
    """Configure logging for the application"""
    log_level = str(app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")).upper()

    logging.config.dictConfig(_logging_config(log_level, with_request_id=True))

    @app.before_request
    def log_request():
        if app.config.get("DEBUG") or app.config.get("LOG_REQUESTS"):
            g.start_time = datetime.now()
            app.logger.info(
                f"Request: {request.method} {request.path}",
                extra={"ip": request.remote_addr},
            )

    @app.after_request
    def log_response(response):
        if (app.config.get("DEBUG") or app.config.get("LOG_REQUESTS")) and hasattr(g, "start_time"):
            duration = (datetime.now() - g.start_time).total_seconds() * 1000
            app.logger.info(
                f"Response: {request.method} {request.path} - {response.status_code}",
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round(duration, 2),
                    "method": request.method,
                    "path": request.path,
                },
            )
        return response

    return app


def configure_logging(log_level=None):
    """Configure logging for non-Flask processes (celery workers, scripts)."""
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.config.dictConfig(_logging_config(log_level, with_request_id=False))
