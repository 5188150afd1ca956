# subscription.py
import uuid
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Index

from carapp_billing.extensions import db
from carapp_billing.utils.time import utcnow


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(100), nullable=False, index=True)

    # Plan
    plan_id = db.Column(db.String(100), nullable=False)
    plan_name = db.Column(db.String(100), nullable=False)
    plan_price = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="GEL")
    period = db.Column(db.String(20), nullable=False, default=BillingPeriod.MONTHLY.value)

    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    start_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_date = db.Column(db.DateTime, nullable=True)
    next_billing_date = db.Column(db.DateTime, nullable=True, index=True)
    # Day of month renewals are pinned to; shorter months clamp to their last day.
    billing_anchor_day = db.Column(db.Integer, nullable=True)

    # Saved card. instrument_save_order_id is the order that first saved the
    # card; chargeable_ref is what the gateway currently accepts as parent order.
    payment_method = db.Column(db.String(30), nullable=False, default="BOG")
    instrument_save_order_id = db.Column(db.String(100), nullable=True)
    chargeable_ref = db.Column(db.String(100), nullable=True)
    last_order_id = db.Column(db.String(100), nullable=True)

    total_paid = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    billing_cycles = db.Column(db.Integer, nullable=False, default=0)

    # Claim-and-stamp marker held while a billing run charges this row
    billing_claim = db.Column(db.String(64), nullable=True)
    billing_claimed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(status = 'active' AND next_billing_date IS NOT NULL) "
            "OR (status != 'active' AND next_billing_date IS NULL)",
            name="active_has_next_billing_date",
        ),
        CheckConstraint(
            "period IN ('daily', 'weekly', 'monthly', 'yearly')",
            name="valid_billing_period",
        ),
        CheckConstraint("billing_cycles >= 0", name="non_negative_billing_cycles"),
        Index("idx_subscription_due", "status", "next_billing_date"),
        Index("idx_subscription_user_status", "user_id", "status"),
    )

    @property
    def stored_instrument_ref(self):
        return self.chargeable_ref

    def is_due(self, now):
        """Eligible for a charge: active, has a saved card and the date has come."""
        return (
            self.status == SubscriptionStatus.ACTIVE.value
            and bool(self.chargeable_ref)
            and self.next_billing_date is not None
            and self.next_billing_date <= now
        )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "plan_price": str(self.plan_price) if self.plan_price is not None else None,
            "currency": self.currency,
            "period": self.period,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "next_billing_date": self.next_billing_date.isoformat() if self.next_billing_date else None,
            "payment_method": self.payment_method,
            "instrument_save_order_id": self.instrument_save_order_id,
            "last_order_id": self.last_order_id,
            "total_paid": str(self.total_paid) if self.total_paid is not None else None,
            "billing_cycles": self.billing_cycles,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Subscription {self.id} user={self.user_id} status={self.status}>"
