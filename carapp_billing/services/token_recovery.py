import logging

from carapp_billing.errors import InstrumentNotFoundError
from carapp_billing.observability.metrics import metrics
from carapp_billing.utils.identifiers import is_gateway_order_id

logger = logging.getLogger(__name__)


class TokenRecovery:
    """
    Charges a subscription's saved card and, when the gateway no longer
    recognises the stored reference, retries exactly once with the reference
    of the user's latest completed payment.
    """

    def __init__(self, ledger, store, gateway):
        self.ledger = ledger
        self.store = store
        self.gateway = gateway

    def charge_with_recovery(self, subscription, amount, currency, external_order_id, description=None):
        """
        Returns ``(charge_result, charged_ref)``. Raises the original
        InstrumentNotFoundError when no usable alternate reference exists.
        """
        current_ref = subscription.chargeable_ref

        try:
            result = self.gateway.charge_stored_instrument(
                parent_order_id=current_ref,
                amount=amount,
                currency=currency,
                external_order_id=external_order_id,
                description=description,
            )
            return result, current_ref
        except InstrumentNotFoundError as original:
            alternate_ref = self._find_alternate_ref(subscription, current_ref)
            if alternate_ref is None:
                metrics.record_recovery("no_alternate")
                logger.warning(
                    "No alternate instrument reference available",
                    extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
                )
                raise original

            logger.info(
                "Retrying charge with alternate instrument reference",
                extra={"subscription_id": subscription.id, "alternate_ref": alternate_ref},
            )
            self.store.replace_instrument_ref(subscription.id, alternate_ref)

            try:
                result = self.gateway.charge_stored_instrument(
                    parent_order_id=alternate_ref,
                    amount=amount,
                    currency=currency,
                    external_order_id=external_order_id,
                    description=description,
                )
            except InstrumentNotFoundError:
                metrics.record_recovery("retry_failed")
                logger.warning(
                    "Charge with alternate reference also failed",
                    extra={"subscription_id": subscription.id},
                )
                raise original
            except Exception:
                metrics.record_recovery("retry_failed")
                raise

            metrics.record_recovery("recovered")
            return result, alternate_ref

    def _find_alternate_ref(self, subscription, failing_ref):
        payment = self.ledger.find_latest_completed_with_instrument_ref(
            subscription.user_id, exclude_ref=failing_ref
        )
        if payment is None:
            return None

        candidate = payment.instrument_ref
        if candidate == failing_ref or not is_gateway_order_id(candidate):
            logger.warning(
                "Rejected malformed alternate instrument reference",
                extra={"subscription_id": subscription.id, "order_id": payment.order_id},
            )
            return None
        return candidate
