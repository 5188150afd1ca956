import uuid
from enum import Enum

from carapp_billing.extensions import db
from carapp_billing.utils.time import utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.REJECTED.value,
)


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(100), nullable=False, index=True)
    order_id = db.Column(db.String(100), unique=True, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="GEL")
    payment_method = db.Column(db.String(30), nullable=False, default="BOG")
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    context = db.Column(db.String(50), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    payment_date = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Recurring / saved card
    is_recurring = db.Column(db.Boolean, nullable=False, default=False)
    parent_order_id = db.Column(db.String(100), nullable=True)
    external_order_id = db.Column(db.String(255), nullable=True)
    recurring_payment_id = db.Column(db.String(36), nullable=True, index=True)
    payment_token = db.Column(db.String(100), nullable=True)

    # Settlement detail from the gateway callback
    transaction_id = db.Column(db.String(100), nullable=True)
    card_type = db.Column(db.String(30), nullable=True)
    reject_reason = db.Column(db.String(255), nullable=True)
    extra = db.Column(db.JSON, nullable=True, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def instrument_ref(self):
        """The order id the gateway accepts as parent for recurring charges."""
        return self.parent_order_id or self.payment_token or self.order_id

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "status": self.status,
            "context": self.context,
            "description": self.description,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "is_recurring": self.is_recurring,
            "parent_order_id": self.parent_order_id,
            "external_order_id": self.external_order_id,
            "recurring_payment_id": self.recurring_payment_id,
            "payment_token": self.payment_token,
            "transaction_id": self.transaction_id,
            "card_type": self.card_type,
            "reject_reason": self.reject_reason,
        }

    def __repr__(self):
        return f"<Payment {self.order_id} status={self.status}>"
