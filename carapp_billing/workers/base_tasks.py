from celery import Task
from celery.utils.log import get_task_logger

from carapp_billing.observability.metrics import metrics

logger = get_task_logger(__name__)


class ObservedTask(Task):
    abstract = True

    def __call__(self, *args, **kwargs):
        task_name = self.name
        try:
            result = super().__call__(*args, **kwargs)
            metrics.record_task(task_name, "success")
            return result
        except Exception:
            metrics.record_task(task_name, "failure")
            logger.exception("Task failed", extra={"task": task_name})
            raise
