# carapp_billing/workers/celery_app.py
from celery import Celery
from celery.signals import after_setup_logger
from kombu import Queue

from carapp_billing.config import get_config
from carapp_billing.logging_config import configure_logging
from carapp_billing.workers.base_tasks import ObservedTask

settings = get_config()

celery_app = Celery(
    "carapp_billing",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["carapp_billing.workers.tasks"],
)

celery_app.Task = ObservedTask

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Reliability settings
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Routing
    task_default_queue="default",
    task_queues=(
        Queue("default"),
        Queue("billing"),
    ),
    task_routes={
        "carapp_billing.workers.tasks.run_billing_cycle": {"queue": "billing"},
    },

    # A billing run must finish before the lock it holds expires
    task_time_limit=settings.BILLING_LOCK_TTL_SECONDS,
    task_soft_time_limit=max(settings.BILLING_LOCK_TTL_SECONDS - 60, 60),

    beat_schedule={
        "run-billing-cycle": {
            "task": "carapp_billing.workers.tasks.run_billing_cycle",
            "schedule": float(settings.BILLING_INTERVAL_SECONDS),
        },
    },
)


@after_setup_logger.connect
def setup_json_logging(logger=None, **kwargs):
    configure_logging(settings.LOG_LEVEL)
