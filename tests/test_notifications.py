from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

import requests

from carapp_billing.services.notification_service import NotificationService, notify_safely

PUSH_URL = "https://push.carapp.ge/notify"


def subscription():
    return SimpleNamespace(
        id="sub-1",
        user_id="usr_1",
        plan_name="Basic package",
        plan_price=Decimal("25.00"),
        currency="GEL",
        next_billing_date=datetime(2024, 2, 1),
    )


def test_without_push_url_nothing_is_sent():
    service = NotificationService(push_url=None)

    with patch("carapp_billing.services.notification_service.requests.post") as post:
        assert service.subscription_activated(subscription()) is None

    post.assert_not_called()


def test_renewal_notification_payload():
    service = NotificationService(push_url=PUSH_URL, timeout=3)

    with patch("carapp_billing.services.notification_service.requests.post") as post:
        thread = service.renewal_charged(subscription(), "order-1", datetime(2024, 2, 1))
        thread.join(timeout=2)

    post.assert_called_once_with(PUSH_URL, json={
        "user_id": "usr_1",
        "event": "renewal_charged",
        "data": {
            "subscription_id": "sub-1",
            "order_id": "order-1",
            "amount": "25.00",
            "currency": "GEL",
            "next_billing_date": "2024-02-01T00:00:00",
        },
    }, timeout=3)


def test_push_failure_is_contained():
    service = NotificationService(push_url=PUSH_URL)

    with patch(
        "carapp_billing.services.notification_service.requests.post",
        side_effect=requests.ConnectionError("refused"),
    ) as post:
        thread = service.subscription_demoted(subscription(), "INSTRUMENT_NOT_FOUND")
        thread.join(timeout=2)

    post.assert_called_once()


def test_thread_start_failure_is_contained():
    service = NotificationService(push_url=PUSH_URL)

    with patch(
        "carapp_billing.services.notification_service.threading.Thread.start",
        side_effect=RuntimeError("can't start new thread"),
    ):
        assert service.renewal_charged(subscription(), "order-1", datetime(2024, 2, 1)) is None


def test_notify_safely_swallows_notifier_errors():
    notifier = Mock()
    notifier.subscription_activated.side_effect = RuntimeError("boom")

    assert notify_safely(notifier, "subscription_activated", subscription()) is None
    notifier.subscription_activated.assert_called_once()


def test_notify_safely_without_notifier():
    assert notify_safely(None, "subscription_activated", subscription()) is None
