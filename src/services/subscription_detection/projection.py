"""
Next-billing projection for subscriptions.

Monthly, quarterly and yearly subscriptions are projected with calendar
arithmetic: the billing day of month is kept and clamped to the length of the
target month (a subscription billed on the 31st is charged on 28/29 February
and back on the 31st in March). Weekly and biweekly subscriptions are projected
by adding days. Irregular subscriptions have no projection.
"""

import logging
from calendar import monthrange
from datetime import date, timedelta
from typing import List, Optional

from models.subscription import SubscriptionFrequency, Subscription
from models.transaction import date_from_timestamp, timestamp_from_date

logger = logging.getLogger(__name__)

MONTH_STEPS = {
    SubscriptionFrequency.MONTHLY: 1,
    SubscriptionFrequency.QUARTERLY: 3,
    SubscriptionFrequency.YEARLY: 12,
}

DAY_STEPS = {
    SubscriptionFrequency.WEEKLY: 7,
    SubscriptionFrequency.BIWEEKLY: 14,
}


def add_months(from_date: date, months: int, anchor_day: Optional[int] = None) -> date:
    """
    Move ``from_date`` by ``months`` calendar months.

    Handles edge cases like day 31 in months with fewer days.
    """
    day = anchor_day or from_date.day
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    days_in_month = monthrange(year, month)[1]
    return date(year, month, min(day, days_in_month))


def next_billing_date(
    last_billing: date,
    frequency: SubscriptionFrequency,
    anchor_day: Optional[int] = None
) -> Optional[date]:
    """
    The billing date that follows ``last_billing``.

    Args:
        last_billing: Date of the latest charge
        frequency: Billing frequency
        anchor_day: Day of month the subscription bills on (defaults to the day of ``last_billing``)

    Returns:
        The next billing date, or None for irregular subscriptions
    """
    if frequency in MONTH_STEPS:
        return add_months(last_billing, MONTH_STEPS[frequency], anchor_day)
    if frequency in DAY_STEPS:
        return last_billing + timedelta(days=DAY_STEPS[frequency])
    return None


def project_next_billing(
    last_billing: int,
    frequency: SubscriptionFrequency,
    first_billing: Optional[int] = None
) -> Optional[int]:
    """
    Millisecond-timestamp variant of ``next_billing_date``.

    The anchor day comes from ``first_billing`` so a month-end billing day
    survives short months. The projection depends only on the series, never
    on the clock, so repeated runs project the same date.
    """
    anchor_day = date_from_timestamp(first_billing).day if first_billing else None
    next_date = next_billing_date(date_from_timestamp(last_billing), frequency, anchor_day)
    if next_date is None:
        return None
    return timestamp_from_date(next_date)


def projected_billings(subscription: Subscription, from_day: date, until_day: date) -> List[date]:
    """
    Every projected billing date of ``subscription`` within [from_day, until_day].

    Projection starts after the last observed billing, so an overdue charge
    (projected before ``from_day``) is skipped rather than reported.
    """
    if subscription.frequency not in MONTH_STEPS and subscription.frequency not in DAY_STEPS:
        return []

    anchor_day = date_from_timestamp(subscription.first_billing).day if subscription.first_billing else None
    current = date_from_timestamp(subscription.last_billing)
    dates = []
    while True:
        current = next_billing_date(current, subscription.frequency, anchor_day)
        if current is None or current > until_day:
            break
        if current >= from_day:
            dates.append(current)
    return dates
