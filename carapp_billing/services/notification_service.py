import logging
import threading

import requests

logger = logging.getLogger(__name__)


class NotificationService:
    """Fire-and-forget push notifications about billing events."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    RENEWAL_CHARGED = "renewal_charged"
    SUBSCRIPTION_DEMOTED = "subscription_demoted"
    SETTLEMENT_FAILED = "settlement_failed"

    def __init__(self, push_url=None, timeout=5):
        self.push_url = push_url
        self.timeout = timeout

    def send(self, user_id, event, data=None):
        """Send asynchronously; failures are logged and never reach the caller."""
        payload = {"user_id": user_id, "event": event, "data": data or {}}

        if not self.push_url:
            logger.info(f"Notification {event} for user {user_id} (push disabled)")
            return None

        def send_async():
            try:
                response = requests.post(self.push_url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                logger.info(f"Notification {event} sent to user {user_id}")
            except requests.RequestException as e:
                logger.error(f"Failed to send notification {event} to user {user_id}: {e}")

        thread = threading.Thread(target=send_async)
        thread.daemon = True
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"Could not start notification {event} for user {user_id}: {e}")
            return None
        return thread

    def subscription_activated(self, subscription):
        return self.send(subscription.user_id, self.SUBSCRIPTION_ACTIVATED, {
            "subscription_id": subscription.id,
            "plan_name": subscription.plan_name,
            "next_billing_date": subscription.next_billing_date.isoformat()
            if subscription.next_billing_date else None,
        })

    def renewal_charged(self, subscription, order_id, next_billing_date):
        return self.send(subscription.user_id, self.RENEWAL_CHARGED, {
            "subscription_id": subscription.id,
            "order_id": order_id,
            "amount": str(subscription.plan_price),
            "currency": subscription.currency,
            "next_billing_date": next_billing_date.isoformat(),
        })

    def subscription_demoted(self, subscription, reason):
        return self.send(subscription.user_id, self.SUBSCRIPTION_DEMOTED, {
            "subscription_id": subscription.id,
            "plan_name": subscription.plan_name,
            "reason": reason,
        })

    def settlement_failed(self, payment, reason=None):
        return self.send(payment.user_id, self.SETTLEMENT_FAILED, {
            "order_id": payment.order_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "reason": reason,
        })


def notify_safely(notifier, event, *args):
    """Call ``notifier.<event>(*args)``; a failing notification never reaches billing."""
    if notifier is None:
        return None
    try:
        return getattr(notifier, event)(*args)
    except Exception:
        logger.exception(f"Notification {event} failed")
        return None
