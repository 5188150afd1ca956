import re
import time

_ORDER_ID = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

# Pattern: <prefix>_<epoch ms>_<userId>, e.g. carapp_1766388727508_usr_42.
# Prefixes: test_payment, test_subscription, carapp, recurring_<id>, subscription_<id>
_EXTERNAL_ORDER_ID = re.compile(
    r"^(?:test_payment|test_subscription|carapp|recurring_[^_]+|subscription_[^_]+)_\d+_(.+)$"
)


def is_gateway_order_id(value):
    """Gateway order ids are UUID shaped; anything else cannot be charged."""
    if not value or not isinstance(value, str):
        return False
    return bool(_ORDER_ID.match(value))


def build_external_order_id(prefix, user_id, now_ms=None):
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{prefix}_{now_ms}_{user_id}"


def user_id_from_external_order_id(external_order_id):
    if not external_order_id:
        return None
    match = _EXTERNAL_ORDER_ID.match(external_order_id)
    return match.group(1) if match else None
