"""
Wiring of the billing services against the current Flask app.

The credential cache, gateway client and notifier are process-wide and built
once by init_gateway(); ledger and store are cheap and bound to db.session.
"""

from flask import current_app

from carapp_billing.extensions import db
from carapp_billing.services.billing_scheduler import BillingScheduler
from carapp_billing.services.callback_service import CallbackService
from carapp_billing.services.payment_ledger import PaymentLedger
from carapp_billing.services.subscription_store import SubscriptionStore
from carapp_billing.services.token_recovery import TokenRecovery


def get_credentials():
    return current_app.extensions["billing.credentials"]


def get_gateway():
    return current_app.extensions["billing.gateway"]


def get_notifier():
    return current_app.extensions["billing.notifier"]


def build_ledger():
    return PaymentLedger(db.session)


def build_store():
    return SubscriptionStore(db.session)


def build_scheduler():
    ledger = build_ledger()
    store = build_store()
    gateway = get_gateway()
    return BillingScheduler(
        store=store,
        ledger=ledger,
        gateway=gateway,
        recovery=TokenRecovery(ledger, store, gateway),
        notifier=get_notifier(),
        claim_ttl=current_app.config.get("BILLING_CLAIM_TTL_SECONDS", 21600),
    )


def build_callback_service():
    return CallbackService(
        session=db.session,
        ledger=build_ledger(),
        store=build_store(),
        notifier=get_notifier(),
        subscription_contexts=current_app.config.get("SUBSCRIPTION_CONTEXTS", ("subscription",)),
    )
