"""
billing_run.py
Recurring invoice generation and overdue status transitions.

run_billing only creates pending dues invoices; paid_months and
next_payment_due move when an invoice is settled, never here.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

import billing_config
import invoices
import store
import utils
from errors import ConflictError, DuesError
from logging_config import run_context
from memberships import transition_status
from models import BILLABLE_STATUSES, BillingConfig, Membership, MembershipStatus

logger = logging.getLogger("dues.billing_run")


@dataclass
class BillingRunResult:
    organization_id: int
    billing_date: date
    dry_run: bool = False
    processed: int = 0
    invoices_created: list[int] = field(default_factory=list)
    # membership ids that would be billed on a dry run
    would_bill: list[int] = field(default_factory=list)
    skipped: int = 0
    errors: list[int] = field(default_factory=list)
    lapsed: list[int] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)


def _create_dues_invoice(membership: Membership, organization) -> int | None:
    """New pending invoice for the membership's due date; None when one already exists."""
    payment_id, created = invoices.find_or_create_dues_invoice(organization, membership, membership.next_payment_due)
    return payment_id if created else None


def apply_status_transitions(
    organization_id: int,
    today: date,
    config: BillingConfig,
    dry_run: bool = False,
    result: BillingRunResult | None = None,
) -> BillingRunResult:
    """
    waiting_period/active with next_payment_due at least lapse_days behind -> lapsed;
    lapsed with next_payment_due at least cancel_months behind -> cancelled.
    """
    result = result or BillingRunResult(organization_id=organization_id, billing_date=today, dry_run=dry_run)

    lapse_cutoff = date.fromordinal(today.toordinal() - config.lapse_days)
    for membership in store.list_memberships_due_before(organization_id, BILLABLE_STATUSES, lapse_cutoff):
        if dry_run:
            result.lapsed.append(membership.id)
            continue
        try:
            transition_status(membership, MembershipStatus.LAPSED, f"payment_overdue_{config.lapse_days}_days")
            result.lapsed.append(membership.id)
        except DuesError:
            logger.exception("lapse_transition_failed", extra={"membership_id": membership.id})
            result.errors.append(membership.id)

    cancel_cutoff = utils.add_months(today, -config.cancel_months)
    lapsed = store.list_memberships_due_before(organization_id, (MembershipStatus.LAPSED,), cancel_cutoff)
    if dry_run:
        # members lapsed in this same dry run are not stored as lapsed yet
        result.cancelled.extend(
            m.id for m in store.list_memberships_due_before(organization_id, BILLABLE_STATUSES, cancel_cutoff)
        )
    for membership in lapsed:
        if dry_run:
            result.cancelled.append(membership.id)
            continue
        try:
            transition_status(
                membership,
                MembershipStatus.CANCELLED,
                f"unpaid_{config.cancel_months}_months",
                {"cancelled_date": today},
            )
            result.cancelled.append(membership.id)
        except DuesError:
            logger.exception("cancel_transition_failed", extra={"membership_id": membership.id})
            result.errors.append(membership.id)

    logger.info(
        "status_transitions_applied",
        extra={
            "organization_id": organization_id,
            "lapsed": len(result.lapsed),
            "cancelled": len(result.cancelled),
            "dry_run": dry_run,
        },
    )
    return result


def run_billing(organization_id: int, billing_date: date | None = None, dry_run: bool = False) -> BillingRunResult:
    """
    Generate pending dues invoices for every billable membership that is due,
    then apply overdue status transitions. A failure on one membership is
    logged and recorded; the run carries on with the rest.
    """
    organization = store.get_organization(organization_id)
    config = billing_config.config_for_organization(organization)
    today = billing_date or utils.today_in_timezone(organization.timezone)
    result = BillingRunResult(organization_id=organization_id, billing_date=today, dry_run=dry_run)

    with run_context(f"billing-{organization_id}-{uuid.uuid4().hex[:8]}"):
        due = store.list_memberships_due_for_billing(organization_id, BILLABLE_STATUSES, today)
        logger.info(
            "billing_run_started",
            extra={"organization_id": organization_id, "billing_date": today.isoformat(), "due": len(due), "dry_run": dry_run},
        )
        for membership in due:
            result.processed += 1
            if dry_run:
                if store.dues_payment_exists(membership.id, membership.next_payment_due):
                    result.skipped += 1
                else:
                    result.would_bill.append(membership.id)
                continue
            try:
                payment_id = _create_dues_invoice(membership, organization)
            except ConflictError:
                logger.warning("dues_invoice_conflict", extra={"membership_id": membership.id})
                result.skipped += 1
                continue
            except DuesError:
                logger.exception("billing_membership_failed", extra={"membership_id": membership.id})
                result.errors.append(membership.id)
                continue
            if payment_id is None:
                result.skipped += 1
                continue
            result.invoices_created.append(payment_id)
            logger.info(
                "dues_invoice_created",
                extra={
                    "membership_id": membership.id,
                    "payment_id": payment_id,
                    "due_date": membership.next_payment_due.isoformat(),
                    "amount": membership.dues_amount,
                },
            )

        apply_status_transitions(organization_id, today, config, dry_run=dry_run, result=result)
        logger.info(
            "billing_run_finished",
            extra={
                "organization_id": organization_id,
                "invoices_created": len(result.invoices_created),
                "skipped": result.skipped,
                "errors": len(result.errors),
            },
        )
    return result
