import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from carapp_billing.errors import InvalidStateTransition, NotFoundError, StoreError
from carapp_billing.models.subscription import Subscription, SubscriptionStatus
from carapp_billing.utils.time import add_period, utcnow

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
PENDING = SubscriptionStatus.PENDING.value
CANCELLED = SubscriptionStatus.CANCELLED.value
EXPIRED = SubscriptionStatus.EXPIRED.value


def plan_for_context(context):
    """Default (plan_id, plan_name) for a first payment made in ``context``."""
    context = context or ""
    if context in ("test", "test_subscription"):
        return "test_plan", "Test subscription"
    if "basic" in context:
        return "basic", "Basic package"
    if "premium" in context:
        return "premium", "Premium package"
    return "subscription_plan", "Premium subscription"


class SubscriptionStore:
    """
    Persistence and lifecycle transitions for subscriptions.

    Writes on the billing path are single conditional UPDATE statements so two
    processes can never both charge or both advance the same row.
    """

    def __init__(self, session):
        self.session = session

    def _fail(self, action, e):
        self.session.rollback()
        logger.error(f"Subscription store {action} failed: {e}")
        return StoreError(f"Could not {action}: {e}")

    def _update(self, action, criteria, values):
        values = dict(values)
        values[Subscription.updated_at] = utcnow()
        try:
            count = (
                self.session.query(Subscription)
                .filter(*criteria)
                .update(values, synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            raise self._fail(action, e) from e
        return count

    def _commit(self, action):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            raise self._fail(action, e) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscription_id):
        try:
            subscription = self.session.get(Subscription, subscription_id)
        except SQLAlchemyError as e:
            raise self._fail(f"load subscription {subscription_id}", e) from e
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def find_due_for_billing(self, now):
        try:
            return (
                self.session.query(Subscription)
                .filter(
                    Subscription.status == ACTIVE,
                    Subscription.chargeable_ref.isnot(None),
                    Subscription.chargeable_ref != "",
                    Subscription.next_billing_date.isnot(None),
                    Subscription.next_billing_date <= now,
                )
                .order_by(Subscription.next_billing_date.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("query due subscriptions", e) from e

    def find_active_for_user(self, user_id):
        try:
            return (
                self.session.query(Subscription)
                .filter_by(user_id=user_id, status=ACTIVE)
                .order_by(Subscription.created_at.desc())
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail(f"query active subscription of {user_id}", e) from e

    def list_all(self):
        try:
            return self.session.query(Subscription).order_by(Subscription.created_at.desc()).all()
        except SQLAlchemyError as e:
            raise self._fail("list subscriptions", e) from e

    def upcoming(self, now, hours=24):
        """Active subscriptions that fall due within the next ``hours``."""
        until = now + timedelta(hours=hours)
        try:
            return (
                self.session.query(Subscription)
                .filter(
                    Subscription.status == ACTIVE,
                    Subscription.next_billing_date >= now,
                    Subscription.next_billing_date <= until,
                )
                .order_by(Subscription.next_billing_date.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("query upcoming subscriptions", e) from e

    # ------------------------------------------------------------------
    # Billing path
    # ------------------------------------------------------------------

    def claim_for_billing(self, subscription_id, due_date, claim_id, now, ttl_seconds):
        """
        Stamp the row as being charged by ``claim_id``.

        Succeeds only while the row is still active, still at ``due_date`` and
        not held by another live claim. Returns True when this caller owns it.
        """
        stale_before = now - timedelta(seconds=ttl_seconds)
        count = self._update(
            "claim subscription for billing",
            (
                Subscription.id == subscription_id,
                Subscription.status == ACTIVE,
                Subscription.next_billing_date == due_date,
                or_(
                    Subscription.billing_claim.is_(None),
                    Subscription.billing_claimed_at < stale_before,
                ),
            ),
            {
                Subscription.billing_claim: claim_id,
                Subscription.billing_claimed_at: now,
            },
        )
        return count == 1

    def release_claim(self, subscription_id, claim_id=None):
        criteria = [Subscription.id == subscription_id]
        if claim_id is not None:
            criteria.append(Subscription.billing_claim == claim_id)
        self._update(
            "release billing claim",
            criteria,
            {Subscription.billing_claim: None, Subscription.billing_claimed_at: None},
        )

    def advance_billing_cycle(self, subscription_id, charged_amount, new_next_billing_date, last_order_id=None):
        values = {
            Subscription.billing_cycles: Subscription.billing_cycles + 1,
            Subscription.total_paid: Subscription.total_paid + Decimal(str(charged_amount)),
            Subscription.next_billing_date: new_next_billing_date,
            Subscription.billing_claim: None,
            Subscription.billing_claimed_at: None,
        }
        if last_order_id:
            values[Subscription.last_order_id] = last_order_id

        count = self._update(
            "advance billing cycle",
            (Subscription.id == subscription_id, Subscription.status == ACTIVE),
            values,
        )
        if count != 1:
            raise StoreError(f"Subscription {subscription_id} is no longer active; cycle not advanced")

        logger.info(
            "Billing cycle advanced",
            extra={
                "subscription_id": subscription_id,
                "next_billing_date": new_next_billing_date.isoformat(),
            },
        )

    def mark_pending(self, subscription_id):
        count = self._update(
            "demote subscription",
            (Subscription.id == subscription_id, Subscription.status == ACTIVE),
            {
                Subscription.status: PENDING,
                Subscription.next_billing_date: None,
                Subscription.billing_claim: None,
                Subscription.billing_claimed_at: None,
            },
        )
        if count:
            logger.warning("Subscription demoted to pending", extra={"subscription_id": subscription_id})
        return count == 1

    def replace_instrument_ref(self, subscription_id, new_ref):
        count = self._update(
            "replace instrument reference",
            (Subscription.id == subscription_id,),
            {Subscription.chargeable_ref: new_ref},
        )
        if count != 1:
            raise StoreError(f"Subscription {subscription_id} not found; reference not replaced")
        logger.info("Instrument reference replaced", extra={"subscription_id": subscription_id})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_from_payment(
        self,
        user_id,
        order_id,
        instrument_ref,
        amount,
        currency="GEL",
        context="subscription",
        plan_id=None,
        plan_name=None,
        period="monthly",
        now=None,
    ):
        """
        Start a subscription from a settled first payment.

        When the user already has an active subscription only its saved card
        and next billing date are refreshed.
        """
        now = now or utcnow()

        existing = self.find_active_for_user(user_id)
        if existing is not None:
            existing.chargeable_ref = instrument_ref
            existing.last_order_id = order_id
            existing.billing_anchor_day = now.day
            existing.next_billing_date = add_period(now, existing.period, anchor_day=now.day)
            self._commit("refresh subscription from payment")
            logger.info(
                "Existing subscription refreshed from payment",
                extra={"subscription_id": existing.id, "order_id": order_id},
            )
            return existing, False

        default_plan_id, default_plan_name = plan_for_context(context)
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan_id or default_plan_id,
            plan_name=plan_name or default_plan_name,
            plan_price=Decimal(str(amount)),
            currency=currency,
            period=period,
            status=ACTIVE,
            start_date=now,
            next_billing_date=add_period(now, period, anchor_day=now.day),
            billing_anchor_day=now.day,
            instrument_save_order_id=order_id,
            chargeable_ref=instrument_ref,
            last_order_id=order_id,
            total_paid=Decimal(str(amount)),
            billing_cycles=1,
        )
        self.session.add(subscription)
        self._commit("create subscription from payment")
        logger.info(
            "Subscription created from payment",
            extra={"subscription_id": subscription.id, "order_id": order_id, "user_id": user_id},
        )
        return subscription, True

    def reactivate(self, subscription_id, next_billing_date=None, now=None):
        """Bring a demoted (pending) subscription back into the billing run."""
        subscription = self.get(subscription_id)

        # Idempotency: already active
        if subscription.status == ACTIVE:
            return subscription

        if subscription.status != PENDING:
            raise InvalidStateTransition(
                f"Cannot reactivate subscription in status {subscription.status}"
            )
        if not subscription.chargeable_ref:
            raise InvalidStateTransition("Cannot reactivate a subscription without a saved card")

        subscription.status = ACTIVE
        subscription.next_billing_date = next_billing_date or now or utcnow()
        subscription.billing_anchor_day = subscription.next_billing_date.day
        subscription.billing_claim = None
        subscription.billing_claimed_at = None
        self._commit("reactivate subscription")
        logger.info("Subscription reactivated", extra={"subscription_id": subscription_id})
        return subscription

    def cancel(self, subscription_id, now=None):
        subscription = self.get(subscription_id)

        if subscription.status == CANCELLED:
            return subscription
        if subscription.status == EXPIRED:
            raise InvalidStateTransition("Cannot cancel an expired subscription")

        subscription.status = CANCELLED
        subscription.next_billing_date = None
        subscription.end_date = now or utcnow()
        subscription.billing_claim = None
        subscription.billing_claimed_at = None
        self._commit("cancel subscription")
        logger.info("Subscription cancelled", extra={"subscription_id": subscription_id})
        return subscription

    def expire(self, subscription_id, now=None):
        subscription = self.get(subscription_id)
        if subscription.status == EXPIRED:
            return subscription

        subscription.status = EXPIRED
        subscription.next_billing_date = None
        subscription.end_date = subscription.end_date or now or utcnow()
        subscription.billing_claim = None
        subscription.billing_claimed_at = None
        self._commit("expire subscription")
        logger.info("Subscription expired", extra={"subscription_id": subscription_id})
        return subscription
