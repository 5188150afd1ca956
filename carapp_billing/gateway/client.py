"""
HTTP client for the Bank of Georgia payments API.

Every operation fetches a bearer token from the shared CredentialCache once
and converts any failure into GatewayError / InstrumentNotFoundError through
the classifier.
"""

import logging
from decimal import Decimal

import requests

from carapp_billing.errors import GatewayError
from carapp_billing.gateway.classifier import CHARGE_OPERATION, classify_gateway_failure

logger = logging.getLogger(__name__)

DECLINED_STATUSES = ("failed", "rejected", "declined", "cancelled", "error")
ORDER_TTL_MINUTES = 15


def _amount(value):
    """Decimal amounts go out as plain numbers with two decimals."""
    return float(Decimal(str(value)).quantize(Decimal("0.01")))


def _error_message(response):
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "")[:500] or None
    if isinstance(payload, dict):
        return payload.get("message") or payload.get("error") or payload.get("code")
    return None


class GatewayClient:
    def __init__(
        self,
        credentials,
        base_url,
        charge_path="/ecommerce/orders/recurring",
        timeout=30,
        session=None,
        callback_url=None,
        app_base_url=None,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.charge_path = charge_path
        self.timeout = timeout
        self.session = session or requests.Session()
        self.callback_url = callback_url
        self.app_base_url = (app_base_url or "").rstrip("/")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method, path, operation, json=None):
        token = self.credentials.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept-Language": "ka",
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                json=json,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(
                f"Gateway {operation} transport failure: {e}",
                extra={"operation": operation},
            )
            raise GatewayError(f"Gateway request failed: {e}", operation=operation) from e

        if response.status_code == 401:
            # Token was revoked or expired early; the next call re-authenticates.
            self.credentials.invalidate()

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            logger.warning(
                f"Gateway {operation} rejected: HTTP {response.status_code}",
                extra={"operation": operation, "status_code": response.status_code},
            )
            raise classify_gateway_failure(response.status_code, message, operation)

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                "Gateway returned a non-JSON body",
                status_code=response.status_code,
                operation=operation,
            ) from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_order(self, order):
        """
        Create a checkout order for a first payment and ask the gateway to
        save the card for later recurring charges.

        ``order`` keys: external_order_id, total_amount, currency, product_id,
        description, callback_url, success_url, fail_url.
        """
        total = _amount(order["total_amount"])
        body = {
            "application_type": "mobile",
            "callback_url": order.get("callback_url") or self.callback_url,
            "external_order_id": order["external_order_id"],
            "purchase_units": {
                "currency": order.get("currency") or "GEL",
                "total_amount": total,
                "basket": [
                    {
                        "product_id": order.get("product_id") or "carapp_service",
                        "description": order.get("description") or "CarApp service",
                        "quantity": 1,
                        "unit_price": total,
                    }
                ],
            },
            "redirect_urls": {
                "success": order.get("success_url") or f"{self.app_base_url}/payment/success",
                "fail": order.get("fail_url") or f"{self.app_base_url}/payment/fail",
            },
            "ttl": ORDER_TTL_MINUTES,
            "save_card": True,
        }

        data = self._request("POST", "/ecommerce/orders", "create_order", json=body)
        order_id = data.get("id")
        redirect_url = (data.get("_links") or {}).get("redirect", {}).get("href")
        if not order_id:
            raise GatewayError("Gateway order response has no id", operation="create_order")

        logger.info("Gateway order created", extra={"order_id": order_id})
        return {"id": order_id, "redirect_url": redirect_url}

    def get_order_status(self, order_id):
        data = self._request("GET", f"/receipt/{order_id}", "get_order_status")
        order_status = data.get("order_status") or {}
        return {
            "order_id": data.get("order_id") or order_id,
            "status": order_status.get("key") or data.get("status"),
            "detail": data,
        }

    def get_payment_details(self, order_id):
        return self._request("GET", f"/receipt/{order_id}", "get_payment_details")

    def charge_stored_instrument(self, parent_order_id, amount, currency, external_order_id, description=None):
        """
        Charge the card saved by ``parent_order_id``.

        Returns ``{"new_order_id", "status"}``. Raises InstrumentNotFoundError
        when the gateway no longer recognises the parent order.
        """
        body = {
            "parent_order_id": parent_order_id,
            "external_order_id": external_order_id,
            "purchase_units": {
                "currency": currency,
                "total_amount": _amount(amount),
            },
        }
        if description:
            body["description"] = description
        if self.callback_url:
            body["callback_url"] = self.callback_url

        logger.info(
            "Charging stored instrument",
            extra={"parent_order_id": parent_order_id, "external_order_id": external_order_id},
        )
        data = self._request("POST", self.charge_path, CHARGE_OPERATION, json=body)

        new_order_id = data.get("id") or data.get("order_id")
        status = data.get("status")
        if isinstance(status, dict):
            status = status.get("key")

        if status and str(status).lower() in DECLINED_STATUSES:
            raise GatewayError(
                data.get("message") or f"Charge declined with status {status}",
                operation=CHARGE_OPERATION,
            )
        if not new_order_id:
            raise GatewayError("Charge response has no order id", operation=CHARGE_OPERATION)

        return {"new_order_id": new_order_id, "status": status or "created"}
