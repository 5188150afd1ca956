"""Management script for the database and billing operations"""

import json
from datetime import datetime

import click
from flask.cli import FlaskGroup

from carapp_billing import create_app
from carapp_billing.errors import BillingError
from carapp_billing.extensions import db
from carapp_billing.services import build_ledger, build_scheduler, build_store
from carapp_billing.utils.identifiers import is_gateway_order_id

cli = FlaskGroup(create_app=create_app)


@cli.command("init-db")
def init_db():
    """Create all tables (development only; production uses `flask db upgrade`)"""
    db.create_all()
    print("✅ Database initialized successfully!")


@cli.command("run-billing")
def run_billing():
    """Run one billing cycle in this process (no run lock)"""
    report = build_scheduler().run()
    print(json.dumps(report.to_dict(), indent=2))


@cli.command("reactivate-subscription")
@click.argument("subscription_id")
@click.option("--next-billing-date", default=None, help="ISO date of the next charge; defaults to now")
def reactivate_subscription(subscription_id, next_billing_date):
    """Move a demoted (pending) subscription back to active"""
    when = datetime.fromisoformat(next_billing_date) if next_billing_date else None
    try:
        subscription = build_store().reactivate(subscription_id, next_billing_date=when)
    except BillingError as e:
        raise click.ClickException(e.message)
    print(f"✅ Subscription {subscription.id} is active, next billing {subscription.next_billing_date.isoformat()}")


@cli.command("update-subscription-token")
@click.argument("subscription_id")
@click.argument("order_id")
def update_subscription_token(subscription_id, order_id):
    """Point a subscription's saved card at a different parent order id"""
    if not is_gateway_order_id(order_id):
        raise click.ClickException(f"{order_id} is not a gateway order id")
    try:
        store = build_store()
        store.get(subscription_id)
        store.replace_instrument_ref(subscription_id, order_id)
    except BillingError as e:
        raise click.ClickException(e.message)
    print(f"✅ Subscription {subscription_id} now charges parent order {order_id}")


@cli.command("create-subscription-from-payment")
@click.argument("order_id")
@click.option("--period", default="monthly", type=click.Choice(["daily", "weekly", "monthly", "yearly"]))
def create_subscription_from_payment(order_id, period):
    """Create (or refresh) a subscription from a completed payment"""
    payment = build_ledger().find_by_order_id(order_id)
    if payment is None:
        raise click.ClickException(f"Payment {order_id} not found")
    if payment.status != "completed":
        raise click.ClickException(f"Payment {order_id} is {payment.status}, not completed")

    try:
        subscription, created = build_store().create_from_payment(
            user_id=payment.user_id,
            order_id=payment.order_id,
            instrument_ref=payment.instrument_ref,
            amount=payment.amount,
            currency=payment.currency,
            context=payment.context,
            period=period,
        )
    except BillingError as e:
        raise click.ClickException(e.message)

    action = "created" if created else "refreshed"
    print(f"✅ Subscription {subscription.id} {action} for user {subscription.user_id}")


if __name__ == "__main__":
    cli()
