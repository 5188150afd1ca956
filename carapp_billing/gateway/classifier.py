"""
Maps raw gateway failures to typed errors.

This is the only place that reads gateway message text. Callers above the
gateway package only see GatewayError / InstrumentNotFoundError.
"""

import re

from carapp_billing.errors import GatewayError, InstrumentNotFoundError

CHARGE_OPERATION = "charge_stored_instrument"

_INSTRUMENT_NOT_FOUND = re.compile(
    r"not\s+found|parent[\s_]order|saved\s+card|invalid\s+order[\s_]?id|card\s+token",
    re.IGNORECASE,
)


def classify_gateway_failure(status_code, message, operation):
    message = message or f"Gateway returned HTTP {status_code}"

    if operation == CHARGE_OPERATION and (
        status_code == 404 or _INSTRUMENT_NOT_FOUND.search(message)
    ):
        return InstrumentNotFoundError(message, status_code=status_code, operation=operation)

    return GatewayError(message, status_code=status_code, operation=operation)
