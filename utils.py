"""
utils.py
Calendar/anchor arithmetic for anniversary billing (no proration), period labels,
organization-local "today" and invoice number formatting.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import config
from errors import ValidationError
from models import FREQUENCY_MONTHS, BillingFrequency

MONTH_NAMES = list(calendar.month_name)[1:]


def parse_iso(d: str) -> date:
    return date.fromisoformat(d)


def get_zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or config.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {tz_name!r}") from e


def today_in_timezone(tz_name: str | None, now: datetime | None = None) -> date:
    """Calendar day of `now` (default: current instant) in the organization's timezone."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(get_zone(tz_name)).date()


def to_local_date(value: date | datetime, tz_name: str | None) -> date:
    if isinstance(value, datetime):
        return today_in_timezone(tz_name, value)
    return value


def days_between(from_date: date, to_date: date) -> int:
    """
    Whole days from `from_date` to `to_date`.
    Both operands are pinned to noon before subtracting so a DST shift can never
    move the result across a day boundary.
    """
    start = datetime.combine(from_date, time(12, 0))
    end = datetime.combine(to_date, time(12, 0))
    return (end - start) // timedelta(days=1)


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(start: date, months: int, anniversary_day: int | None = None) -> date:
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    With `anniversary_day`, the target day is that day clamped to the target month,
    so a 31st anniversary goes Jan 31 -> Feb 28 -> Mar 31 instead of drifting to the 28th.
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    day = anniversary_day if anniversary_day else start.day
    return date(y, m, min(day, last_day_of_month(y, m)))


def months_for_frequency(frequency: BillingFrequency | str) -> int:
    try:
        return FREQUENCY_MONTHS[BillingFrequency(frequency)]
    except ValueError as e:
        raise ValidationError(f"Unknown billing frequency: {frequency!r}") from e


def next_billing_date(
    current_anchor: date | datetime,
    frequency: BillingFrequency | str,
    tz_name: str | None = None,
    anniversary_day: int | None = None,
) -> date:
    """
    Next billing date one period after `current_anchor`.

    monthly +1 month, biannual +6 months, annual +1 year, all by calendar months.
    A datetime anchor is first reduced to its calendar day in the organization's
    timezone; the time of day never matters (no proration).
    """
    anchor = to_local_date(current_anchor, tz_name)
    return add_months(anchor, months_for_frequency(frequency), anniversary_day)


def period_end(period_start: date, months: int, anniversary_day: int | None = None) -> date:
    # End is the day before the next period starts
    return add_months(period_start, months, anniversary_day) - timedelta(days=1)


def format_period_label(start: date, frequency: BillingFrequency | str) -> str:
    month = MONTH_NAMES[start.month - 1]
    frequency = BillingFrequency(frequency)
    if frequency == BillingFrequency.BIANNUAL:
        end = add_months(start, 6)
        return f"{month[:3]} {start.year} - {MONTH_NAMES[end.month - 1][:3]} {end.year}"
    if frequency == BillingFrequency.ANNUAL:
        return f"{start.year}-{start.year + 1}"
    return f"{month} {start.year}"


def format_custom_period_label(start: date, end: date) -> str:
    s, e = MONTH_NAMES[start.month - 1][:3], MONTH_NAMES[end.month - 1][:3]
    if start.year == end.year:
        return f"{s} - {e} {start.year}"
    return f"{s} {start.year} - {e} {end.year}"


def period_label_for_months(start: date, months: int) -> str:
    for frequency, n in FREQUENCY_MONTHS.items():
        if n == months:
            return format_period_label(start, frequency)
    return format_custom_period_label(start, period_end(start, months))


_ORG_PREFIX = re.compile(r"^(Organization|Islamic Center|IC|Islamic Centre)\s+", re.IGNORECASE)


def org_code(name: str) -> str:
    """
    Two-letter code from an organization name.
    "Amanah Logic" -> "AL", "Islamic Center of Fremont" -> "OF", "Al-Nur Organization" -> "AN"
    """
    cleaned = _ORG_PREFIX.sub("", name.strip()).strip()
    words = [w for w in re.split(r"[\s-]+", cleaned) if w]
    if len(words) >= 2:
        return (words[0][0] + words[1][0]).upper()
    return cleaned[:2].upper()


def format_invoice_number(org_name: str, billing_date: date, sequence: int) -> str:
    return f"INV-{org_code(org_name)}-{billing_date:%Y%m}-{sequence:04d}"
