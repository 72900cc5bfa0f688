from datetime import date, datetime, timedelta, timezone

import pytest

import utils
from errors import ValidationError
from models import BillingFrequency


@pytest.mark.parametrize(
    "start, months, expected",
    [
        (date(2024, 1, 31), 1, date(2024, 2, 29)),
        (date(2023, 1, 31), 1, date(2023, 2, 28)),
        (date(2024, 8, 31), 6, date(2025, 2, 28)),
        (date(2024, 11, 15), 2, date(2025, 1, 15)),
        (date(2024, 3, 15), -3, date(2023, 12, 15)),
    ],
)
def test_add_months_clamps_to_month_end(start, months, expected):
    assert utils.add_months(start, months) == expected


def test_add_months_anniversary_day_does_not_drift():
    feb = utils.add_months(date(2024, 1, 31), 1, anniversary_day=31)
    assert feb == date(2024, 2, 29)
    assert utils.add_months(feb, 1, anniversary_day=31) == date(2024, 3, 31)
    # without the anniversary day the clamped day carries forward
    assert utils.add_months(feb, 1) == date(2024, 3, 29)


@pytest.mark.parametrize(
    "frequency, expected",
    [
        (BillingFrequency.MONTHLY, date(2024, 2, 15)),
        (BillingFrequency.BIANNUAL, date(2024, 7, 15)),
        (BillingFrequency.ANNUAL, date(2025, 1, 15)),
    ],
)
def test_next_billing_date_by_frequency(frequency, expected):
    assert utils.next_billing_date(date(2024, 1, 15), frequency) == expected


def test_next_billing_date_is_later_with_same_day_for_every_anchor():
    day = date(2024, 1, 1)
    while day.year == 2024:
        for frequency in BillingFrequency:
            nxt = utils.next_billing_date(day, frequency)
            assert nxt > day
            assert nxt.day == min(day.day, utils.last_day_of_month(nxt.year, nxt.month))
        day += timedelta(days=1)


def test_next_billing_date_ignores_time_of_day_in_org_timezone():
    # 02:00 UTC on Mar 1 is still Feb 29 in Los Angeles
    anchor = datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)
    assert utils.next_billing_date(anchor, "monthly", "America/Los_Angeles") == date(2024, 3, 29)
    assert utils.next_billing_date(anchor, "monthly", "UTC") == date(2024, 4, 1)


def test_today_in_timezone_uses_org_calendar_day():
    now = datetime(2025, 1, 1, 5, 0, tzinfo=timezone.utc)
    assert utils.today_in_timezone("America/Los_Angeles", now) == date(2024, 12, 31)
    assert utils.today_in_timezone("Asia/Karachi", now) == date(2025, 1, 1)


def test_unknown_timezone_is_a_validation_error():
    with pytest.raises(ValidationError):
        utils.today_in_timezone("Mars/Olympus_Mons")


def test_days_between_across_dst_change():
    # US spring forward happened on 2024-03-10
    assert utils.days_between(date(2024, 3, 9), date(2024, 3, 11)) == 2
    assert utils.days_between(date(2024, 11, 2), date(2024, 11, 4)) == 2
    assert utils.days_between(date(2024, 3, 11), date(2024, 3, 9)) == -2


def test_period_end_is_day_before_next_period():
    assert utils.period_end(date(2025, 1, 15), 1) == date(2025, 2, 14)
    assert utils.period_end(date(2025, 1, 1), 12) == date(2025, 12, 31)


def test_period_labels():
    assert utils.format_period_label(date(2025, 1, 1), "monthly") == "January 2025"
    assert utils.format_period_label(date(2025, 1, 1), "biannual") == "Jan 2025 - Jul 2025"
    assert utils.format_period_label(date(2025, 1, 1), "annual") == "2025-2026"
    assert utils.period_label_for_months(date(2025, 3, 1), 1) == "March 2025"


@pytest.mark.parametrize(
    "name, code",
    [
        ("Amanah Logic", "AL"),
        ("Islamic Center of Fremont", "OF"),
        ("Al-Nur Organization", "AN"),
        ("Masjid", "MA"),
    ],
)
def test_org_code(name, code):
    assert utils.org_code(name) == code


def test_format_invoice_number():
    assert utils.format_invoice_number("Amanah Logic", date(2025, 1, 5), 7) == "INV-AL-202501-0007"
