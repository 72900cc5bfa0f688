from datetime import date

import pytest

import catchup
import store
from errors import ValidationError
from models import BillingFrequency, PaymentStatus, PaymentType


def test_three_full_months_of_catchup():
    calc = catchup.calculate_catchup_charges(date(2024, 1, 15), date(2024, 4, 15), 40)

    assert [(i.period_start, i.period_end) for i in calc.line_items] == [
        (date(2024, 1, 15), date(2024, 2, 14)),
        (date(2024, 2, 15), date(2024, 3, 14)),
        (date(2024, 3, 15), date(2024, 4, 14)),
    ]
    assert all(i.amount == 40 for i in calc.line_items)
    assert calc.total_amount == 120
    assert calc.line_items[1].description == "February 2024 (catch-up)"
    assert "3 months" in calc.summary


def test_no_full_period_is_empty_not_an_error():
    calc = catchup.calculate_catchup_charges(date(2024, 3, 20), date(2024, 4, 15), 40)
    assert calc.line_items == []
    assert calc.total_amount == 0


def test_partial_trailing_period_is_not_charged():
    calc = catchup.calculate_catchup_charges(date(2024, 1, 15), date(2024, 4, 1), 25)
    assert len(calc.line_items) == 2
    assert calc.total_amount == 50


@pytest.mark.parametrize("frequency", [BillingFrequency.BIANNUAL, BillingFrequency.ANNUAL, "annual"])
def test_backdating_rejected_for_non_monthly(frequency):
    with pytest.raises(ValidationError):
        catchup.validate_backdating_allowed(frequency)


def test_backdating_allowed_for_monthly():
    catchup.validate_backdating_allowed(BillingFrequency.MONTHLY)


def test_plan_rejects_backdated_annual_membership(make_membership):
    membership = make_membership(billing_frequency=BillingFrequency.ANNUAL, billing_anchor_date=date(2024, 1, 1))
    with pytest.raises(ValidationError):
        catchup.plan_enrollment_charges(membership, date(2024, 6, 1))


def test_plan_for_backdated_monthly_membership(make_membership):
    membership = make_membership(billing_anchor_date=date(2024, 1, 15))
    plan = catchup.plan_enrollment_charges(membership, date(2024, 4, 2))

    assert plan.next_billing_date == date(2024, 4, 15)
    assert len(plan.catchup.line_items) == 3
    assert plan.catchup.total_amount == 120


def test_first_billing_date_rules(make_membership):
    today = date(2024, 5, 10)
    future = make_membership(next_payment_due=date(2024, 6, 1))
    past = make_membership(next_payment_due=date(2024, 5, 1))
    fresh = make_membership()

    assert catchup.first_billing_date(future, today) == date(2024, 6, 1)
    assert catchup.first_billing_date(past, today) == date(2024, 6, 1)
    assert catchup.first_billing_date(fresh, today) == date(2024, 6, 10)


def test_apply_enrollment_plan_creates_back_dues_once(make_membership):
    membership = make_membership(billing_anchor_date=date(2024, 1, 15))

    catchup.apply_enrollment_plan(membership.id, today=date(2024, 4, 2))
    # regenerating the payment link must not bill the same months again
    catchup.apply_enrollment_plan(membership.id, today=date(2024, 4, 2))

    payments = store.list_payments(membership.id)
    assert len(payments) == 3
    assert {p.type for p in payments} == {PaymentType.BACK_DUES}
    assert {p.status for p in payments} == {PaymentStatus.PENDING}
    assert all(p.months_credited == 1 for p in payments)
    assert len({p.invoice_number for p in payments}) == 3
    assert store.get_membership(membership.id).next_payment_due == date(2024, 4, 15)
