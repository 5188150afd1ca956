import logging

from sqlalchemy.exc import SQLAlchemyError

from carapp_billing.errors import LedgerError
from carapp_billing.models.payment import Payment, PaymentStatus
from carapp_billing.utils.identifiers import is_gateway_order_id
from carapp_billing.utils.time import utcnow

logger = logging.getLogger(__name__)


class PaymentLedger:
    """
    Persistence for payment records.

    The billing run only ever inserts ``pending`` payments; terminal status is
    written by the gateway callback through mark_settled().
    """

    def __init__(self, session):
        self.session = session

    def _commit(self, action):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Payment ledger {action} failed: {e}")
            raise LedgerError(f"Could not {action}: {e}") from e

    def record_payment(self, record: dict) -> Payment:
        payment = Payment(**record)
        try:
            self.session.add(payment)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Could not record payment: {e}") from e
        self._commit("record payment")

        logger.info(
            "Payment recorded",
            extra={"order_id": payment.order_id, "status": payment.status, "user_id": payment.user_id},
        )
        return payment

    def find_by_order_id(self, order_id):
        try:
            return self.session.query(Payment).filter_by(order_id=order_id).first()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Could not load payment {order_id}: {e}") from e

    def find_latest_completed_with_instrument_ref(self, user_id, exclude_ref=None):
        """
        Most recent completed payment of ``user_id`` whose instrument reference
        is a gateway order id and differs from ``exclude_ref`` (the reference
        that failed). Older payments are tried when newer ones are unusable.
        """
        try:
            payments = (
                self.session.query(Payment)
                .filter(
                    Payment.user_id == user_id,
                    Payment.status == PaymentStatus.COMPLETED.value,
                )
                .order_by(Payment.payment_date.desc(), Payment.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Could not query payments for user {user_id}: {e}") from e

        for payment in payments:
            ref = payment.instrument_ref
            if ref != exclude_ref and is_gateway_order_id(ref):
                return payment
        return None

    def attach_instrument_token(self, order_id, token):
        payment = self.find_by_order_id(order_id)
        if payment is None:
            logger.warning("Cannot attach instrument token, payment not found", extra={"order_id": order_id})
            return None

        # Idempotency: already attached
        if payment.payment_token == token:
            return payment

        payment.payment_token = token
        self._commit("attach instrument token")
        logger.info("Instrument token attached", extra={"order_id": order_id})
        return payment

    def mark_settled(self, order_id, status, detail=None):
        """
        Move a payment to a terminal status reported by the gateway.

        Completed payments are never transitioned again. Returns the payment
        and whether this call changed it.
        """
        detail = detail or {}
        payment = self.find_by_order_id(order_id)
        if payment is None:
            raise LedgerError(f"Payment {order_id} not found")

        if payment.status == PaymentStatus.COMPLETED.value:
            return payment, False

        if payment.status == status:
            return payment, False

        payment.status = status
        if status == PaymentStatus.COMPLETED.value:
            payment.payment_date = utcnow()
        for field in ("transaction_id", "card_type", "reject_reason", "parent_order_id"):
            if detail.get(field):
                setattr(payment, field, detail[field])
        if detail.get("raw") is not None:
            payment.extra = detail["raw"]

        self._commit("settle payment")
        logger.info("Payment settled", extra={"order_id": order_id, "status": status})
        return payment, True

    def list_for_user(self, user_id):
        try:
            return (
                self.session.query(Payment)
                .filter_by(user_id=user_id)
                .order_by(Payment.payment_date.desc())
                .all()
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Could not list payments for user {user_id}: {e}") from e
