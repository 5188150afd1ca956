from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta

PERIOD_DELTAS = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}


def utcnow():
    """Naive UTC timestamp; every datetime column in this service stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value):
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def add_period(start, period, anchor_day=None):
    """
    Advance ``start`` by exactly one billing period.

    Month and year arithmetic is calendar based and clamps to the last day of
    shorter months (Jan 31 + 1 month -> Feb 28/29). With ``anchor_day`` the
    result lands on that day of the month where it exists, so a clamped date
    returns to the anchor afterwards (Jan 31 -> Feb 29 -> Mar 31).
    """
    try:
        delta = PERIOD_DELTAS[period]
    except KeyError:
        raise ValueError(f"Unsupported billing period: {period!r}") from None
    if anchor_day and period in ("monthly", "yearly"):
        delta = delta + relativedelta(day=anchor_day)
    return start + delta
