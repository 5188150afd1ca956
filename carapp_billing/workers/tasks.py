from celery.utils.log import get_task_logger

from carapp_billing.observability.metrics import metrics
from carapp_billing.services import build_scheduler
from carapp_billing.utils.redis_lock import LockNotAcquired, redis_lock
from carapp_billing.workers.celery_app import celery_app

logger = get_task_logger(__name__)

BILLING_RUN_LOCK = "billing:run"

_flask_app = None


def get_flask_app():
    global _flask_app
    if _flask_app is None:
        from carapp_billing import create_app

        _flask_app = create_app()
    return _flask_app


def run_billing_once(app):
    """Run one billing cycle unless another process already holds the run lock."""
    with app.app_context():
        try:
            with redis_lock(BILLING_RUN_LOCK, ttl=app.config["BILLING_LOCK_TTL_SECONDS"]):
                report = build_scheduler().run()
        except LockNotAcquired:
            metrics.record_run("skipped")
            logger.info("Billing run already in progress in another process; skipping")
            return {"skipped": True}
    return report.to_dict()


@celery_app.task(name="carapp_billing.workers.tasks.run_billing_cycle")
def run_billing_cycle():
    return run_billing_once(get_flask_app())
