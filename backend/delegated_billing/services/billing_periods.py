"""Billing period and dunning retry date arithmetic."""

import calendar as cal
from datetime import datetime, timedelta

from delegated_billing.models.dunning_campaign import DEFAULT_RETRY_INTERVAL_DAYS
from delegated_billing.models.subscription import BillingInterval


def add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)


def add_interval(dt: datetime, interval: str) -> datetime:
    """Add one billing interval to a datetime."""
    if interval == BillingInterval.WEEKLY.value:
        return dt + timedelta(weeks=1)
    elif interval == BillingInterval.MONTHLY.value:
        return add_months(dt, 1)
    elif interval == BillingInterval.QUARTERLY.value:
        return add_months(dt, 3)
    elif interval == BillingInterval.YEARLY.value:
        return add_months(dt, 12)
    raise ValueError(f"Unknown interval: {interval}")


def period_starting_at(start: datetime, interval: str) -> tuple[datetime, datetime]:
    """Return the billing period ``[start, start + interval)``."""
    return start, add_interval(start, interval)


def retry_delay(retry_interval_days: list[int] | None, retry_count: int) -> timedelta:
    """Delay before the retry that follows ``retry_count`` failed attempts.

    Uses the campaign's configured gaps, repeating the last gap once the list
    runs out.
    """
    gaps = [int(days) for days in (retry_interval_days or []) if int(days) > 0]
    if not gaps:
        gaps = list(DEFAULT_RETRY_INTERVAL_DAYS)
    index = min(max(retry_count - 1, 0), len(gaps) - 1)
    return timedelta(days=gaps[index])
