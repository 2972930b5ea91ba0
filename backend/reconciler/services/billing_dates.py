"""Billing date arithmetic for recurring subscriptions."""

import calendar as cal
from datetime import datetime, timedelta

from reconciler.models.subscription import FrequencyUnit


def _add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)


def compute_next_billing_date(frequency: int, frequency_unit: str, from_date: datetime) -> datetime:
    """Return the billing date one period after ``from_date``.

    Month and year steps clamp to the last day of the target month, so
    Jan 31 + 1 month is Feb 29 in a leap year and Feb 29 + 1 year is Feb 28.
    Time of day and tzinfo are preserved.
    """
    if isinstance(frequency, bool) or not isinstance(frequency, int) or frequency < 1:
        raise ValueError(f"Invalid frequency: {frequency}")

    if frequency_unit == FrequencyUnit.DAYS.value:
        return from_date + timedelta(days=frequency)
    elif frequency_unit == FrequencyUnit.WEEKS.value:
        return from_date + timedelta(weeks=frequency)
    elif frequency_unit == FrequencyUnit.MONTHS.value:
        return _add_months(from_date, frequency)
    elif frequency_unit == FrequencyUnit.YEARS.value:
        return _add_months(from_date, 12 * frequency)
    raise ValueError(f"Unknown frequency unit: {frequency_unit}")


def normalize_frequency_unit(value: str | None) -> str:
    """Map provider frequency vocabulary ("month", "months", "day") to ours."""
    if not value:
        return FrequencyUnit.MONTHS.value
    unit = value.lower().strip()
    if not unit.endswith("s"):
        unit = f"{unit}s"
    if unit not in {u.value for u in FrequencyUnit}:
        raise ValueError(f"Unknown frequency unit: {value}")
    return unit
