from carapp_billing.models.callback_event import GatewayCallbackEvent
from carapp_billing.models.payment import Payment, PaymentStatus
from carapp_billing.models.subscription import BillingPeriod, Subscription, SubscriptionStatus

__all__ = [
    "BillingPeriod",
    "GatewayCallbackEvent",
    "Payment",
    "PaymentStatus",
    "Subscription",
    "SubscriptionStatus",
]
