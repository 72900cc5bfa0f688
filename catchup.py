"""
catchup.py
Catch-up charges for backdated monthly enrollments.

A membership whose billing anchor date lies in the past owes dues for every full
billing period between the anchor and its first real billing date. Those periods
are charged once, at enrollment (or when the payment link is regenerated), as
one line item per elapsed month. Only monthly memberships may be backdated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import invoices
import store
import utils
from errors import ValidationError
from models import (
    BillingFrequency,
    CatchupCalculation,
    CatchupLineItem,
    Membership,
    PaymentStatus,
    PaymentType,
)

logger = logging.getLogger("dues.catchup")


def validate_backdating_allowed(frequency: BillingFrequency | str) -> None:
    try:
        frequency = BillingFrequency(frequency)
    except ValueError as e:
        raise ValidationError(f"Unknown billing frequency: {frequency!r}") from e
    if frequency != BillingFrequency.MONTHLY:
        raise ValidationError(
            f"Backdating is only allowed for monthly memberships. "
            f"This {frequency.value} membership cannot be backdated."
        )


def calculate_catchup_charges(
    anchor_date: date | datetime,
    next_billing_date: date | datetime,
    full_period_amount: float,
    tz_name: str | None = None,
    anniversary_day: int | None = None,
) -> CatchupCalculation:
    """
    One line item per full month between `anchor_date` (inclusive) and
    `next_billing_date` (exclusive), each at `full_period_amount`.

    Anchor 2024-01-15, next 2024-04-15, 40.00 ->
    Jan 15-Feb 14, Feb 15-Mar 14, Mar 15-Apr 14; total 120.00.

    A period that would run past `next_billing_date` is not a full period and is
    not charged. No elapsed period gives an empty list, not an error.
    """
    if full_period_amount < 0:
        raise ValidationError(f"Catch-up amount must not be negative, got {full_period_amount}")

    anchor = utils.to_local_date(anchor_date, tz_name)
    until = utils.to_local_date(next_billing_date, tz_name)
    day = anniversary_day or anchor.day
    amount = round(float(full_period_amount), 2)

    items: list[CatchupLineItem] = []
    i = 0
    while True:
        # step from the anchor each time so short months never shift later periods
        start = utils.add_months(anchor, i, day)
        following = utils.add_months(anchor, i + 1, day)
        if following > until:
            break
        items.append(
            CatchupLineItem(
                description=f"{utils.format_period_label(start, BillingFrequency.MONTHLY)} (catch-up)",
                amount=amount,
                period_start=start,
                period_end=following - timedelta(days=1),
            )
        )
        i += 1

    total = round(sum(item.amount for item in items), 2)
    if items:
        summary = (
            f"{len(items)} month{'s' if len(items) != 1 else ''} of catch-up dues "
            f"({items[0].period_start.isoformat()} to {items[-1].period_end.isoformat()}), total {total:.2f}"
        )
    else:
        summary = "No full billing periods elapsed; no catch-up dues"
    return CatchupCalculation(line_items=items, total_amount=total, summary=summary)


@dataclass(frozen=True)
class EnrollmentPlan:
    next_billing_date: date
    catchup: CatchupCalculation | None = None


def first_billing_date(membership: Membership, today: date) -> date:
    """
    First real (recurring) billing date for an enrolling membership.

    - next_payment_due still ahead: that date
    - next_payment_due today or past: one period after it
    - backdated anchor, no due date: first anchor-aligned date after today
    - otherwise: one period after today
    """
    day = membership.billing_anniversary_day
    if membership.next_payment_due:
        if membership.next_payment_due > today:
            return membership.next_payment_due
        return utils.next_billing_date(membership.next_payment_due, membership.billing_frequency, anniversary_day=day)

    anchor = membership.billing_anchor_date
    if anchor and anchor < today:
        months = membership.months_per_period
        day = day or anchor.day
        n = 1
        candidate = utils.add_months(anchor, months, day)
        while candidate <= today:
            n += 1
            candidate = utils.add_months(anchor, months * n, day)
        return candidate
    return utils.next_billing_date(today, membership.billing_frequency, anniversary_day=day)


def plan_enrollment_charges(membership: Membership, today: date) -> EnrollmentPlan:
    """First billing date and, for a backdated anchor, the catch-up charges owed."""
    next_date = first_billing_date(membership, today)
    anchor = membership.billing_anchor_date
    if not anchor or anchor >= today:
        return EnrollmentPlan(next_billing_date=next_date)

    validate_backdating_allowed(membership.billing_frequency)
    calculation = calculate_catchup_charges(
        anchor,
        next_date,
        membership.dues_amount,
        anniversary_day=membership.billing_anniversary_day,
    )
    if calculation.line_items:
        logger.info(
            "backdated_enrollment_catchup",
            extra={
                "membership_id": membership.id,
                "billing_anchor_date": anchor.isoformat(),
                "next_billing_date": next_date.isoformat(),
                "catchup_summary": calculation.summary,
                "catchup_amount": calculation.total_amount,
            },
        )
    return EnrollmentPlan(next_billing_date=next_date, catchup=calculation)


def create_catchup_payments(membership: Membership, calculation: CatchupCalculation, today: date) -> list[int]:
    """
    Persist catch-up line items as pending back-dues payments (1 month credited each).
    Periods that already have a back-dues payment are skipped, so regenerating a
    payment link does not bill the same month twice.
    """
    organization = store.get_organization(membership.organization_id)
    existing = store.back_dues_period_starts(membership.id)
    created: list[int] = []
    for item in calculation.line_items:
        if item.period_start in existing:
            continue
        payment_id = store.insert_payment({
            "organization_id": membership.organization_id,
            "membership_id": membership.id,
            "type": PaymentType.BACK_DUES,
            "status": PaymentStatus.PENDING,
            "amount": item.amount,
            "months_credited": 1,
            "invoice_number": invoices.new_invoice_number(organization, item.period_start),
            "due_date": today,
            "period_start": item.period_start,
            "period_end": item.period_end,
            "period_label": item.description,
            "notes": item.description,
        })
        created.append(payment_id)
    if created:
        logger.info("catchup_payments_created", extra={"membership_id": membership.id, "payment_ids": created})
    return created


def apply_enrollment_plan(membership_id: int, today: date | None = None) -> EnrollmentPlan:
    """
    Onboarding / "regenerate payment link": compute the plan, persist catch-up
    invoices and set the first due date if the membership has none yet.
    """
    membership = store.get_membership(membership_id)
    organization = store.get_organization(membership.organization_id)
    today = today or utils.today_in_timezone(organization.timezone)

    plan = plan_enrollment_charges(membership, today)
    if plan.catchup and plan.catchup.line_items:
        create_catchup_payments(membership, plan.catchup, today)
    if membership.next_payment_due is None:
        store.update_membership(membership.id, {"next_payment_due": plan.next_billing_date})
    return plan
