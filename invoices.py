"""
invoices.py
Invoice metadata for generated payments: number, due date, covered period and label.
"""

from __future__ import annotations

from datetime import date

import db
import store
import utils
from models import Membership, Organization, PaymentStatus, PaymentType


def new_invoice_number(organization: Organization, billing_date: date, conn=None) -> str:
    """INV-{ORGCODE}-{YYYYMM}-{SEQ}, sequence reserved atomically per organization and month."""
    seq = store.next_invoice_sequence(organization.id, f"{billing_date:%Y%m}", conn=conn)
    return utils.format_invoice_number(organization.name, billing_date, seq)


def invoice_metadata(
    organization: Organization,
    membership: Membership,
    billing_date: date,
    months: int | None = None,
    conn=None,
) -> dict:
    """
    Payment columns describing the period starting at `billing_date`.
    `months` defaults to one billing period of the membership's frequency.
    """
    months = membership.months_per_period if months is None else months
    return {
        "invoice_number": new_invoice_number(organization, billing_date, conn=conn),
        "due_date": billing_date,
        "period_start": billing_date,
        "period_end": utils.period_end(billing_date, max(months, 1), membership.billing_anniversary_day),
        "period_label": utils.period_label_for_months(billing_date, max(months, 1)),
        "months_credited": months,
    }


def find_or_create_dues_invoice(
    organization: Organization,
    membership: Membership,
    billing_date: date,
    amount: float | None = None,
    months: int | None = None,
    settlement_key: str | None = None,
) -> tuple[int, bool]:
    """
    Pending dues invoice for `billing_date`, created only if the membership has
    no live one for that date yet. Runs under the store write lock, so
    overlapping billing runs, gateway redeliveries and repeated admin entries
    all land on the same row. When `settlement_key` was already settled, its
    payment is returned instead.

    Returns (payment_id, created).
    """
    with db.transaction() as conn:
        if settlement_key:
            prior = store.get_settlement(settlement_key, conn=conn)
            if prior is not None:
                return prior.payment_id, False
        existing = store.find_dues_payment(membership.id, billing_date, conn=conn)
        if existing is not None:
            return existing.id, False
        fields = {
            "organization_id": membership.organization_id,
            "membership_id": membership.id,
            "type": PaymentType.DUES,
            "status": PaymentStatus.PENDING,
            "amount": membership.dues_amount if amount is None else amount,
            **invoice_metadata(organization, membership, billing_date, months, conn=conn),
        }
        return store.insert_payment(fields, conn=conn), True
