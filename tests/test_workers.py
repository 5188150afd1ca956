from unittest.mock import MagicMock, Mock, patch

import pytest

from carapp_billing.gateway.client import GatewayClient
from carapp_billing.utils.redis_lock import LockNotAcquired
from carapp_billing.workers import tasks
from carapp_billing.workers.celery_app import celery_app

pytestmark = pytest.mark.integration


def test_billing_task_is_scheduled_on_the_billing_queue():
    schedule = celery_app.conf.beat_schedule["run-billing-cycle"]

    assert schedule["task"] == "carapp_billing.workers.tasks.run_billing_cycle"
    assert celery_app.conf.task_routes[schedule["task"]] == {"queue": "billing"}


def test_run_billing_once_holds_the_run_lock(app, make_subscription):
    make_subscription()
    gateway = Mock(spec=GatewayClient)
    gateway.charge_stored_instrument.return_value = {"new_order_id": "order-1", "status": "created"}
    app.extensions["billing.gateway"] = gateway

    with patch.object(tasks, "redis_lock", MagicMock()) as lock:
        result = tasks.run_billing_once(app)

    lock.assert_called_once_with("billing:run", ttl=app.config["BILLING_LOCK_TTL_SECONDS"])
    assert result["charged"] == 1


def test_run_billing_once_skips_when_lock_is_held(app):
    gateway = Mock(spec=GatewayClient)
    app.extensions["billing.gateway"] = gateway

    with patch.object(tasks, "redis_lock", side_effect=LockNotAcquired("held")):
        result = tasks.run_billing_once(app)

    assert result == {"skipped": True}
    gateway.charge_stored_instrument.assert_not_called()


def test_task_delegates_to_run_billing_once():
    flask_app = Mock()

    with patch.object(tasks, "get_flask_app", return_value=flask_app), \
            patch.object(tasks, "run_billing_once", return_value={"processed": 0}) as run_once:
        result = tasks.run_billing_cycle()

    run_once.assert_called_once_with(flask_app)
    assert result == {"processed": 0}
