import time

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from carapp_billing.extensions import db

health_bp = Blueprint("health", __name__)


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": str(e)}


def _check_redis():
    if current_app.config.get("TESTING"):
        return {"status": "skipped", "reason": "testing"}

    start = time.time()
    try:
        client = redis.from_url(current_app.config["REDIS_URL"], socket_connect_timeout=2)
        client.ping()
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}


def run_health_checks():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
    }
    degraded = any(c["status"] == "error" for c in checks.values())
    return {
        "status": "degraded" if degraded else "ok",
        "checks": checks,
    }


@health_bp.route("/health", methods=["GET"])
def health():
    results = run_health_checks()

    status_code = 200
    if results["status"] == "degraded":
        status_code = 503

    return jsonify(results), status_code
