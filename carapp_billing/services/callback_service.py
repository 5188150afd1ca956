"""
Inbound settlement callbacks from the payment gateway.

This is the only code path that moves a payment to a terminal status and the
only one that confirms which reference the gateway accepts for future
recurring charges.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from carapp_billing.errors import LedgerError, StoreError
from carapp_billing.models.callback_event import GatewayCallbackEvent
from carapp_billing.models.payment import PaymentStatus
from carapp_billing.observability.metrics import metrics
from carapp_billing.services.notification_service import notify_safely
from carapp_billing.utils.identifiers import user_id_from_external_order_id
from carapp_billing.utils.time import utcnow

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = ("completed", "success")
FAILURE_STATUSES = ("failed", "rejected", "cancelled", "declined")


def _dict(value):
    return value if isinstance(value, dict) else {}


def _first(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _to_decimal(value):
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


@dataclass
class GatewayCallback:
    order_id: str | None
    status: str
    amount: Decimal
    currency: str
    external_order_id: str | None
    context: str | None
    description: str | None
    reject_reason: str | None
    payment_detail: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload):
        """
        The gateway nests its data inconsistently: ``body.body``, ``body`` or
        flat. Look in all three, innermost first.
        """
        payload = _dict(payload)
        body = _dict(payload.get("body"))
        inner = _dict(body.get("body")) or body or payload

        purchase_units = _dict(_first(inner.get("purchase_units"), body.get("purchase_units"), payload.get("purchase_units")))
        items = purchase_units.get("items") or []
        first_item = _dict(items[0]) if items else {}

        status = _first(
            _dict(inner.get("order_status")).get("key"),
            _dict(body.get("order_status")).get("key"),
            payload.get("status"),
        )

        return cls(
            order_id=_first(
                inner.get("order_id"),
                _dict(body.get("client")).get("order_id"),
                payload.get("order_id"),
            ),
            status=str(status or "").lower(),
            amount=_to_decimal(_first(purchase_units.get("request_amount"), payload.get("amount"))),
            currency=_first(purchase_units.get("currency_code"), payload.get("currency")) or "GEL",
            external_order_id=_first(
                payload.get("external_order_id"),
                inner.get("external_order_id"),
                body.get("external_order_id"),
            ),
            context=_first(payload.get("product_id"), first_item.get("external_item_id")),
            description=_first(
                payload.get("description"),
                payload.get("purchase_description"),
                first_item.get("description"),
            ),
            reject_reason=_first(payload.get("reject_reason"), inner.get("reject_reason")),
            payment_detail=_dict(_first(inner.get("payment_detail"), body.get("payment_detail"), payload.get("payment_detail"))),
            raw=payload,
        )

    @property
    def is_success(self):
        return self.status in SUCCESS_STATUSES

    @property
    def is_failure(self):
        return self.status in FAILURE_STATUSES

    @property
    def settlement_detail(self):
        return {
            "transaction_id": self.payment_detail.get("transaction_id"),
            "card_type": self.payment_detail.get("card_type"),
            "parent_order_id": self.payment_detail.get("parent_order_id"),
            "reject_reason": self.reject_reason,
            "raw": self.raw,
        }

    def payload_hash(self):
        encoded = json.dumps(self.raw, sort_keys=True, default=str).encode()
        return hashlib.sha256(encoded).hexdigest()


class CallbackService:
    def __init__(self, session, ledger, store, notifier=None, subscription_contexts=("subscription", "test_subscription")):
        self.session = session
        self.ledger = ledger
        self.store = store
        self.notifier = notifier
        self.subscription_contexts = tuple(subscription_contexts)

    def handle(self, payload):
        callback = GatewayCallback.from_payload(payload)
        log_extra = {"order_id": callback.order_id, "status": callback.status}

        if not callback.order_id:
            logger.error("Gateway callback without order_id rejected")
            return {"success": False, "message": "Order ID is missing"}

        if not (callback.is_success or callback.is_failure):
            logger.info("Gateway callback acknowledged as pending", extra=log_extra)
            return {"success": True, "message": "Payment is pending", "order_id": callback.order_id}

        event = self._begin_event(callback)
        if event is None:
            logger.info("Duplicate gateway callback ignored", extra=log_extra)
            return {
                "success": True,
                "duplicate": True,
                "message": "Callback already processed",
                "order_id": callback.order_id,
            }

        if callback.is_success:
            result = self._handle_success(callback)
        else:
            result = self._handle_failure(callback)

        self._finish_event(event)
        return result

    # ------------------------------------------------------------------
    # Receipt log
    # ------------------------------------------------------------------

    def _begin_event(self, callback):
        """Return the event row to process, or None for a processed replay."""
        try:
            event = (
                self.session.query(GatewayCallbackEvent)
                .filter_by(order_id=callback.order_id, status=callback.status)
                .first()
            )
            if event is not None:
                return None if event.is_processed else event

            event = GatewayCallbackEvent(
                order_id=callback.order_id,
                status=callback.status,
                payload_hash=callback.payload_hash(),
            )
            self.session.add(event)
            self.session.commit()
            return event
        except IntegrityError:
            # A concurrent delivery of the same callback won the insert.
            self.session.rollback()
            return None
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Could not record gateway callback: {e}") from e

    def _finish_event(self, event):
        event.is_processed = True
        event.processed_at = utcnow()
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Could not mark gateway callback processed: {e}") from e

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _handle_success(self, callback):
        order_id = callback.order_id
        payment = self.ledger.find_by_order_id(order_id)

        if payment is None:
            user_id = user_id_from_external_order_id(callback.external_order_id) or "unknown"
            logger.info(
                "Creating payment from gateway callback",
                extra={"order_id": order_id, "user_id": user_id},
            )
            self.ledger.record_payment({
                "user_id": user_id,
                "order_id": order_id,
                "amount": callback.amount,
                "currency": callback.currency,
                "status": PaymentStatus.PENDING.value,
                "context": callback.context,
                "description": callback.description or "BOG payment",
                "external_order_id": callback.external_order_id,
            })

        payment, changed = self.ledger.mark_settled(
            order_id, PaymentStatus.COMPLETED.value, callback.settlement_detail
        )
        if not changed:
            logger.info("Payment already completed; callback not re-applied", extra={"order_id": order_id})
            return {"success": True, "duplicate": True, "message": "Payment already completed", "order_id": order_id}

        token = callback.payment_detail.get("parent_order_id") or order_id
        self.ledger.attach_instrument_token(order_id, token)

        result = {"success": True, "message": "Payment completed", "order_id": order_id}

        if payment.recurring_payment_id is None and payment.context in self.subscription_contexts:
            try:
                subscription, created = self.store.create_from_payment(
                    user_id=payment.user_id,
                    order_id=order_id,
                    instrument_ref=token,
                    amount=payment.amount,
                    currency=payment.currency,
                    context=payment.context,
                )
            except StoreError as e:
                # The payment is settled either way; the subscription can be
                # created later with the create-subscription-from-payment command.
                logger.error(
                    f"Subscription could not be created from payment: {e.message}",
                    extra={"order_id": order_id, "user_id": payment.user_id},
                )
            else:
                result["subscription_id"] = subscription.id
                result["subscription_created"] = created
                notify_safely(self.notifier, "subscription_activated", subscription)

        logger.info("Payment completed", extra={"order_id": order_id, "user_id": payment.user_id})
        return result

    def _handle_failure(self, callback):
        order_id = callback.order_id
        payment = self.ledger.find_by_order_id(order_id)
        if payment is None:
            logger.warning("Failure callback for unknown payment", extra={"order_id": order_id})
            return {"success": False, "message": "Payment failed", "order_id": order_id}

        status = PaymentStatus.REJECTED.value if callback.status == "rejected" else PaymentStatus.FAILED.value
        payment, changed = self.ledger.mark_settled(order_id, status, callback.settlement_detail)

        if changed:
            metrics.record_settlement_failure()
            logger.error(
                "Payment settlement failed",
                extra={
                    "order_id": order_id,
                    "user_id": payment.user_id,
                    "subscription_id": payment.recurring_payment_id,
                    "reject_reason": callback.reject_reason,
                },
            )
            notify_safely(self.notifier, "settlement_failed", payment, callback.reject_reason)

        return {"success": False, "message": "Payment failed", "order_id": order_id, "status": payment.status}
