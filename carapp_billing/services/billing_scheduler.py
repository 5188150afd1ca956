"""
Recurring billing run.

A run discovers every due subscription, puts it on a work queue and drains
the queue one subscription at a time:

    DISCOVER -> CLAIM -> CHARGE (with one-shot token recovery)
             -> RECORD pending payment -> ADVANCE next_billing_date
    on gateway failure: DEMOTE to pending

A failure while handling one subscription is contained to that subscription.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from carapp_billing.errors import (
    AuthExchangeError,
    GatewayError,
    InstrumentNotFoundError,
    LedgerError,
    NotFoundError,
    StoreError,
)
from carapp_billing.models.payment import PaymentStatus
from carapp_billing.observability.metrics import metrics
from carapp_billing.services.notification_service import notify_safely
from carapp_billing.utils.identifiers import build_external_order_id
from carapp_billing.utils.time import add_period, utcnow

logger = logging.getLogger(__name__)

CHARGED = "charged"
DEMOTED = "demoted"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class SubscriptionOutcome:
    subscription_id: str
    outcome: str
    order_id: str | None = None
    next_billing_date: datetime | None = None
    reason: str | None = None

    def to_dict(self):
        return {
            "subscription_id": self.subscription_id,
            "outcome": self.outcome,
            "order_id": self.order_id,
            "next_billing_date": self.next_billing_date.isoformat() if self.next_billing_date else None,
            "reason": self.reason,
        }


@dataclass
class BillingRunReport:
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list = field(default_factory=list)

    def count(self, outcome):
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def processed(self):
        return len(self.outcomes)

    def to_dict(self):
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            CHARGED: self.count(CHARGED),
            DEMOTED: self.count(DEMOTED),
            SKIPPED: self.count(SKIPPED),
            ERROR: self.count(ERROR),
            "subscriptions": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class _DueItem:
    """Snapshot of a due subscription taken at discovery time."""

    subscription: object
    subscription_id: str
    user_id: str
    due_date: datetime
    period: str
    anchor_day: Optional[int]
    amount: Decimal
    currency: str
    plan_name: str


class BillingScheduler:
    def __init__(self, store, ledger, gateway, recovery, notifier=None, clock=utcnow, claim_ttl=21600):
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.recovery = recovery
        self.notifier = notifier
        self.clock = clock
        self.claim_ttl = claim_ttl

    def run(self, now=None) -> BillingRunReport:
        now = now or self.clock()
        report = BillingRunReport(started_at=now)

        try:
            due = self.store.find_due_for_billing(now)
        except StoreError:
            metrics.record_run("failed")
            logger.exception("Billing run could not load due subscriptions")
            raise

        logger.info(f"Billing run started: {len(due)} subscription(s) due", extra={"due_count": len(due)})

        queue = deque(
            _DueItem(
                subscription=s,
                subscription_id=s.id,
                user_id=s.user_id,
                due_date=s.next_billing_date,
                period=s.period,
                anchor_day=s.billing_anchor_day,
                amount=s.plan_price,
                currency=s.currency,
                plan_name=s.plan_name,
            )
            for s in due
        )

        while queue:
            item = queue.popleft()
            try:
                outcome = self._process(item, now)
            except Exception as e:
                logger.exception(
                    "Unexpected error while billing subscription",
                    extra={"subscription_id": item.subscription_id},
                )
                outcome = SubscriptionOutcome(item.subscription_id, ERROR, reason=str(e))
            report.outcomes.append(outcome)

        report.finished_at = self.clock()
        metrics.record_run("completed")
        logger.info(
            "Billing run finished",
            extra={
                "charged": report.count(CHARGED),
                "demoted": report.count(DEMOTED),
                "skipped": report.count(SKIPPED),
                "errors": report.count(ERROR),
            },
        )
        return report

    def _process(self, item, now):
        subscription_id = item.subscription_id
        log_extra = {"subscription_id": subscription_id, "user_id": item.user_id}

        if not item.subscription.is_due(now):
            return SubscriptionOutcome(subscription_id, SKIPPED, reason="not due")

        claim_id = uuid.uuid4().hex
        try:
            claimed = self.store.claim_for_billing(subscription_id, item.due_date, claim_id, now, self.claim_ttl)
        except StoreError as e:
            return SubscriptionOutcome(subscription_id, ERROR, reason=e.message)
        if not claimed:
            logger.info("Subscription already claimed by another run", extra=log_extra)
            return SubscriptionOutcome(subscription_id, SKIPPED, reason="claimed elsewhere")

        external_order_id = build_external_order_id(f"recurring_{subscription_id}", item.user_id)

        # CHARGE
        try:
            result, charged_ref = self.recovery.charge_with_recovery(
                item.subscription,
                amount=item.amount,
                currency=item.currency,
                external_order_id=external_order_id,
                description=f"{item.plan_name} subscription renewal",
            )
        except AuthExchangeError as e:
            metrics.record_charge("auth_failed")
            logger.error("Gateway authentication failed; subscription left for next run", extra=log_extra)
            try:
                self.store.release_claim(subscription_id, claim_id)
            except StoreError as store_error:
                return SubscriptionOutcome(subscription_id, ERROR, reason=store_error.message)
            return SubscriptionOutcome(subscription_id, SKIPPED, reason=e.message)
        except (InstrumentNotFoundError, GatewayError) as e:
            return self._demote(item, e)

        new_order_id = result["new_order_id"]
        metrics.record_charge("charged")
        log_extra["order_id"] = new_order_id
        logger.info("Recurring charge accepted", extra=log_extra)

        # RECORD
        record_failed = None
        try:
            self.ledger.record_payment({
                "user_id": item.user_id,
                "order_id": new_order_id,
                "amount": item.amount,
                "currency": item.currency,
                "status": PaymentStatus.PENDING.value,
                "context": "subscription",
                "description": f"{item.plan_name} subscription renewal",
                "payment_date": now,
                "is_recurring": True,
                "parent_order_id": charged_ref,
                "external_order_id": external_order_id,
                "recurring_payment_id": subscription_id,
            })
        except LedgerError as e:
            record_failed = e.message
            logger.error("Charged but the payment record could not be written", extra=log_extra)

        # ADVANCE from the previous due date, never from now
        new_next_billing_date = add_period(item.due_date, item.period, anchor_day=item.anchor_day)
        try:
            self.store.advance_billing_cycle(
                subscription_id,
                charged_amount=item.amount,
                new_next_billing_date=new_next_billing_date,
                last_order_id=new_order_id,
            )
        except StoreError as e:
            # The claim stays in place so no other run charges this cycle again.
            logger.error("Charged but the billing cycle could not be advanced", extra=log_extra)
            return SubscriptionOutcome(subscription_id, ERROR, order_id=new_order_id, reason=e.message)

        notify_safely(self.notifier, "renewal_charged", item.subscription, new_order_id, new_next_billing_date)

        if record_failed:
            return SubscriptionOutcome(
                subscription_id, ERROR,
                order_id=new_order_id,
                next_billing_date=new_next_billing_date,
                reason=record_failed,
            )
        return SubscriptionOutcome(
            subscription_id, CHARGED,
            order_id=new_order_id,
            next_billing_date=new_next_billing_date,
        )

    def _demote(self, item, error):
        subscription_id = item.subscription_id
        outcome_label = "instrument_not_found" if isinstance(error, InstrumentNotFoundError) else "gateway_error"
        metrics.record_charge(outcome_label)

        try:
            self.store.mark_pending(subscription_id)
        except StoreError as e:
            return SubscriptionOutcome(subscription_id, ERROR, reason=e.message)

        metrics.record_demotion()
        logger.error(
            f"Subscription demoted to pending after {error.code}: {error.message}",
            extra={"subscription_id": subscription_id, "user_id": item.user_id, "error_code": error.code},
        )
        notify_safely(self.notifier, "subscription_demoted", item.subscription, error.code)
        return SubscriptionOutcome(subscription_id, DEMOTED, reason=error.message)

    def charge_by_order_id(self, order_id, amount, external_order_id=None, currency="GEL", user_id=None):
        """
        One-off charge of the card saved by ``order_id``, outside any
        subscription. The result is recorded as a pending recurring payment.
        """
        if user_id is None:
            parent = self.ledger.find_by_order_id(order_id)
            if parent is None:
                raise NotFoundError(f"No payment found for order {order_id}")
            user_id = parent.user_id
            currency = parent.currency or currency

        external_order_id = external_order_id or build_external_order_id("carapp", user_id)
        result = self.gateway.charge_stored_instrument(
            parent_order_id=order_id,
            amount=amount,
            currency=currency,
            external_order_id=external_order_id,
            description="CarApp recurring payment",
        )
        metrics.record_charge("charged")

        payment = self.ledger.record_payment({
            "user_id": user_id,
            "order_id": result["new_order_id"],
            "amount": Decimal(str(amount)),
            "currency": currency,
            "status": PaymentStatus.PENDING.value,
            "context": "recurring",
            "description": "CarApp recurring payment",
            "payment_date": self.clock(),
            "is_recurring": True,
            "parent_order_id": order_id,
            "external_order_id": external_order_id,
        })
        logger.info("One-off recurring charge accepted", extra={"order_id": payment.order_id, "parent_order_id": order_id})
        return {
            "order_id": payment.order_id,
            "parent_order_id": order_id,
            "status": payment.status,
            "gateway_status": result.get("status"),
        }
