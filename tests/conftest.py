from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest
from faker import Faker

from carapp_billing import create_app
from carapp_billing.extensions import db
from carapp_billing.gateway.client import GatewayClient
from carapp_billing.models import Payment, Subscription
from carapp_billing.services.notification_service import NotificationService
from carapp_billing.services.payment_ledger import PaymentLedger
from carapp_billing.services.subscription_store import SubscriptionStore

# Initialize Faker for generating test data
fake = Faker()


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (uses the Flask app and database)"
    )
    config.addinivalue_line(
        "markers",
        "payment: mark test as payment-related"
    )


@pytest.fixture()
def app():
    """Application on a fresh in-memory database for every test"""
    app = create_app("testing")

    with app.app_context():
        db.create_all()

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db_session(app):
    return db.session


@pytest.fixture()
def ledger(db_session):
    return PaymentLedger(db_session)


@pytest.fixture()
def store(db_session):
    return SubscriptionStore(db_session)


@pytest.fixture()
def gateway():
    return Mock(spec=GatewayClient)


@pytest.fixture()
def notifier():
    return Mock(spec=NotificationService)


@pytest.fixture()
def make_subscription(db_session):
    """Insert an active subscription; keyword arguments override defaults"""

    def _make(**overrides):
        data = {
            "user_id": f"usr_{fake.random_int(min=1, max=99999)}",
            "plan_id": "basic",
            "plan_name": "Basic package",
            "plan_price": Decimal("25.00"),
            "currency": "GEL",
            "period": "monthly",
            "status": "active",
            "start_date": datetime(2023, 12, 1),
            "next_billing_date": datetime(2024, 1, 1),
            "instrument_save_order_id": fake.uuid4(),
            "chargeable_ref": fake.uuid4(),
            "total_paid": Decimal("25.00"),
            "billing_cycles": 1,
        }
        data.update(overrides)
        subscription = Subscription(**data)
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture()
def make_payment(db_session):
    """Insert a payment; keyword arguments override defaults"""

    def _make(**overrides):
        data = {
            "user_id": f"usr_{fake.random_int(min=1, max=99999)}",
            "order_id": fake.uuid4(),
            "amount": Decimal("25.00"),
            "currency": "GEL",
            "status": "completed",
            "context": "subscription",
            "description": fake.sentence(),
            "payment_date": datetime(2023, 12, 1),
        }
        data.update(overrides)
        payment = Payment(**data)
        db_session.add(payment)
        db_session.commit()
        return payment

    return _make


@pytest.fixture()
def token_response():
    """Factory for a gateway OAuth token response"""

    def _make(status_code=200, payload=None):
        response = Mock()
        response.status_code = status_code
        response.json.return_value = payload if payload is not None else {
            "access_token": fake.sha256(),
            "token_type": "Bearer",
            "expires_in": 4102444800000,  # 2100-01-01 in epoch milliseconds
        }
        response.text = ""
        return response

    return _make


@pytest.fixture()
def gateway_response():
    """Factory for a gateway API response"""

    def _make(status_code=200, payload=None, text=""):
        response = Mock()
        response.status_code = status_code
        if isinstance(payload, Exception):
            response.json.side_effect = payload
        else:
            response.json.return_value = payload if payload is not None else {}
        response.text = text
        return response

    return _make
