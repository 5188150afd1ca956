from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from carapp_billing.errors import GatewayError, InstrumentNotFoundError
from carapp_billing.gateway.classifier import CHARGE_OPERATION, classify_gateway_failure
from carapp_billing.gateway.client import GatewayClient

BASE_URL = "https://api.bog.ge/payments/v1"
PARENT = "3f1c9c3e-8a7e-4a43-9e0c-1b5f2d7f6a10"
NEW_ORDER = "8d2b7b4c-6f1e-4e6b-9a55-0c1d2e3f4a5b"

pytestmark = pytest.mark.payment


@pytest.fixture()
def credentials():
    credentials = Mock()
    credentials.get_token.return_value = "access-token"
    return credentials


@pytest.fixture()
def session():
    return Mock()


@pytest.fixture()
def client(credentials, session):
    return GatewayClient(
        credentials=credentials,
        base_url=BASE_URL,
        charge_path="/ecommerce/orders/recurring",
        timeout=7,
        session=session,
        callback_url="https://carapp.ge/bog/callback",
        app_base_url="https://carapp.ge",
    )


def charge(client):
    return client.charge_stored_instrument(
        parent_order_id=PARENT,
        amount=Decimal("25.00"),
        currency="GEL",
        external_order_id="recurring_sub-1_1704067200000_usr_1",
        description="Basic package subscription renewal",
    )


class TestChargeStoredInstrument:
    def test_success_returns_new_order_id(self, client, session, credentials, gateway_response):
        session.request.return_value = gateway_response(200, {"id": NEW_ORDER, "status": "created"})

        result = charge(client)

        assert result == {"new_order_id": NEW_ORDER, "status": "created"}
        credentials.get_token.assert_called_once_with()

        args, kwargs = session.request.call_args
        assert args == ("POST", f"{BASE_URL}/ecommerce/orders/recurring")
        assert kwargs["headers"]["Authorization"] == "Bearer access-token"
        assert kwargs["timeout"] == 7
        body = kwargs["json"]
        assert body["parent_order_id"] == PARENT
        assert body["external_order_id"] == "recurring_sub-1_1704067200000_usr_1"
        assert body["purchase_units"] == {"currency": "GEL", "total_amount": 25.0}

    def test_order_id_key_is_accepted(self, client, session, gateway_response):
        session.request.return_value = gateway_response(201, {"order_id": NEW_ORDER})

        assert charge(client)["new_order_id"] == NEW_ORDER

    def test_404_is_instrument_not_found(self, client, session, gateway_response):
        session.request.return_value = gateway_response(404, {"message": "Resource missing"})

        with pytest.raises(InstrumentNotFoundError) as exc_info:
            charge(client)

        assert exc_info.value.status_code == 404

    def test_not_found_message_is_instrument_not_found(self, client, session, gateway_response):
        session.request.return_value = gateway_response(400, {"message": "Parent order not found"})

        with pytest.raises(InstrumentNotFoundError):
            charge(client)

    def test_other_failures_are_generic_gateway_errors(self, client, session, gateway_response):
        session.request.return_value = gateway_response(500, {"message": "Internal error"})

        with pytest.raises(GatewayError) as exc_info:
            charge(client)

        assert not isinstance(exc_info.value, InstrumentNotFoundError)
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Internal error"

    def test_non_json_error_body_uses_text(self, client, session, gateway_response):
        session.request.return_value = gateway_response(502, ValueError("no json"), text="Bad Gateway")

        with pytest.raises(GatewayError) as exc_info:
            charge(client)

        assert exc_info.value.message == "Bad Gateway"

    def test_401_invalidates_cached_token(self, client, session, credentials, gateway_response):
        session.request.return_value = gateway_response(401, {"message": "Unauthorized"})

        with pytest.raises(GatewayError):
            charge(client)

        credentials.invalidate.assert_called_once_with()

    def test_timeout_is_a_gateway_error(self, client, session):
        session.request.side_effect = requests.Timeout("read timed out")

        with pytest.raises(GatewayError) as exc_info:
            charge(client)

        assert exc_info.value.operation == CHARGE_OPERATION

    def test_declined_status_in_2xx_body_is_a_gateway_error(self, client, session, gateway_response):
        session.request.return_value = gateway_response(200, {"id": NEW_ORDER, "status": "rejected"})

        with pytest.raises(GatewayError):
            charge(client)

    def test_2xx_without_order_id_is_a_gateway_error(self, client, session, gateway_response):
        session.request.return_value = gateway_response(200, {"status": "created"})

        with pytest.raises(GatewayError):
            charge(client)


class TestOrders:
    def test_create_order_saves_card(self, client, session, gateway_response):
        session.request.return_value = gateway_response(200, {
            "id": NEW_ORDER,
            "_links": {"redirect": {"href": "https://payment.bog.ge/?order_id=" + NEW_ORDER}},
        })

        result = client.create_order({
            "external_order_id": "carapp_1704067200000_usr_1",
            "total_amount": "25",
            "currency": "GEL",
        })

        assert result == {"id": NEW_ORDER, "redirect_url": "https://payment.bog.ge/?order_id=" + NEW_ORDER}
        args, kwargs = session.request.call_args
        assert args == ("POST", f"{BASE_URL}/ecommerce/orders")
        body = kwargs["json"]
        assert body["save_card"] is True
        assert body["ttl"] == 15
        assert body["callback_url"] == "https://carapp.ge/bog/callback"
        assert body["redirect_urls"] == {
            "success": "https://carapp.ge/payment/success",
            "fail": "https://carapp.ge/payment/fail",
        }
        assert body["purchase_units"]["basket"][0]["unit_price"] == 25.0

    def test_get_order_status_reads_order_status_key(self, client, session, gateway_response):
        session.request.return_value = gateway_response(200, {
            "order_id": NEW_ORDER,
            "order_status": {"key": "completed", "value": "Completed"},
        })

        result = client.get_order_status(NEW_ORDER)

        assert result["order_id"] == NEW_ORDER
        assert result["status"] == "completed"
        args, _ = session.request.call_args
        assert args == ("GET", f"{BASE_URL}/receipt/{NEW_ORDER}")

    def test_order_status_404_is_not_an_instrument_error(self, client, session, gateway_response):
        session.request.return_value = gateway_response(404, {"message": "Order not found"})

        with pytest.raises(GatewayError) as exc_info:
            client.get_order_status(NEW_ORDER)

        assert not isinstance(exc_info.value, InstrumentNotFoundError)


@pytest.mark.parametrize("status_code,message,expected", [
    (404, None, InstrumentNotFoundError),
    (400, "Saved card not found", InstrumentNotFoundError),
    (422, "invalid order_id", InstrumentNotFoundError),
    (400, "Insufficient funds", GatewayError),
    (503, "Service unavailable", GatewayError),
])
def test_classifier_for_charge_operation(status_code, message, expected):
    error = classify_gateway_failure(status_code, message, CHARGE_OPERATION)

    assert type(error) is expected
    assert error.status_code == status_code
