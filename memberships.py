"""
memberships.py
Membership lifecycle: guarded status transitions, agreement steps, reinstatement
and the audited paid-months override.

Status moves only along models.STATUS_TRANSITIONS:

    pending -> awaiting_signature -> waiting_period -> active
    waiting_period/active -> lapsed -> cancelled
    lapsed -> waiting_period/active            (payment received)
    cancelled -> waiting_period/active         (admin reinstatement, back dues paid)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

import billing_config
import db
import store
import utils
from errors import ConflictError, InvalidTransitionError, ValidationError
from models import (
    BillingConfig,
    Membership,
    MembershipStatus,
    SubscriptionStatus,
    can_transition,
)

logger = logging.getLogger("dues.memberships")


def standing_status(paid_months: int, config: BillingConfig) -> MembershipStatus:
    """Good-standing status for a paying member: active once past the eligibility threshold."""
    if paid_months >= config.eligibility_months:
        return MembershipStatus.ACTIVE
    return MembershipStatus.WAITING_PERIOD


def transition_status(
    membership: Membership,
    target: MembershipStatus,
    reason: str,
    fields: dict | None = None,
    conn=None,
) -> MembershipStatus:
    """
    Move `membership` to `target`, writing `fields` alongside.
    Rejects pairs missing from the transition table; the write is guarded on the
    status read by the caller so two writers cannot both apply a transition.
    """
    if not can_transition(membership.status, target):
        raise InvalidTransitionError(membership.status.value, target.value)
    changed = store.update_membership_status(
        membership.id, membership.status, {**(fields or {}), "status": target}, conn=conn
    )
    if not changed:
        raise ConflictError(f"Membership {membership.id} changed status concurrently")
    logger.info(
        "membership_status_transition",
        extra={
            "membership_id": membership.id,
            "old_status": membership.status.value,
            "new_status": target.value,
            "reason": reason,
        },
    )
    return target


def mark_agreement_sent(membership_id: int) -> MembershipStatus:
    membership = store.get_membership(membership_id)
    return transition_status(membership, MembershipStatus.AWAITING_SIGNATURE, "agreement_sent")


def mark_agreement_signed(membership_id: int, signed_at: datetime | None = None) -> MembershipStatus:
    """Signature completes onboarding: waiting period, or straight to active if already past the threshold."""
    signed_at = signed_at or datetime.now(timezone.utc)
    with db.transaction() as conn:
        membership = store.get_membership(membership_id, conn=conn)
        organization = store.get_organization(membership.organization_id, conn=conn)
        config = billing_config.config_for_organization(organization)
        target = standing_status(membership.paid_months, config)
        fields: dict = {"agreement_signed_at": signed_at}
        if membership.join_date is None:
            fields["join_date"] = utils.today_in_timezone(organization.timezone, signed_at)
        if target == MembershipStatus.ACTIVE and membership.eligible_date is None:
            fields["eligible_date"] = utils.today_in_timezone(organization.timezone, signed_at)
        return transition_status(membership, target, "agreement_signed", fields, conn=conn)


def override_paid_months(membership_id: int, new_value: int, actor: str, reason: str) -> Membership:
    """
    Explicit admin correction of paid months, written to the adjustment audit trail.
    This is the only operation allowed to lower paid_months.
    """
    if isinstance(new_value, bool) or not isinstance(new_value, int) or new_value < 0:
        raise ValidationError(f"paid_months must be a non-negative integer, got {new_value!r}")
    if not actor or not actor.strip():
        raise ValidationError("An actor is required for a paid months override")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required for a paid months override")

    with db.transaction() as conn:
        membership = store.get_membership(membership_id, conn=conn)
        organization = store.get_organization(membership.organization_id, conn=conn)
        config = billing_config.config_for_organization(organization)
        store.record_paid_months_adjustment(
            membership.id, membership.paid_months, new_value, actor.strip(), reason.strip(), conn=conn
        )
        fields: dict = {"paid_months": new_value}
        if new_value >= config.eligibility_months and membership.eligible_date is None:
            fields["eligible_date"] = utils.today_in_timezone(organization.timezone)
        store.update_membership(membership.id, fields, conn=conn)
        if membership.status == MembershipStatus.WAITING_PERIOD and new_value >= config.eligibility_months:
            transition_status(membership, MembershipStatus.ACTIVE, "paid_months_override", conn=conn)

    logger.info(
        "paid_months_overridden",
        extra={
            "membership_id": membership_id,
            "old_paid_months": membership.paid_months,
            "new_paid_months": new_value,
            "actor": actor,
            "reason": reason,
        },
    )
    return store.get_membership(membership_id)


def reinstate_membership(
    membership_id: int,
    actor: str,
    reset_paid_months: int | None = None,
    reason: str = "reinstatement",
    today: date | None = None,
) -> MembershipStatus:
    """
    Admin reinstatement of a cancelled membership.

    Every back-dues invoice and every past-due dues invoice must be paid first.
    `reset_paid_months` optionally restarts the counter (audited like an override).
    """
    membership = store.get_membership(membership_id)
    if membership.status != MembershipStatus.CANCELLED:
        raise InvalidTransitionError(membership.status.value, MembershipStatus.WAITING_PERIOD.value)

    organization = store.get_organization(membership.organization_id)
    today = today or utils.today_in_timezone(organization.timezone)
    outstanding = store.list_unpaid_obligations(membership.id, today)
    if outstanding:
        owed = round(sum(p.amount for p in outstanding), 2)
        raise ValidationError(
            f"Membership {membership.id} has {len(outstanding)} unpaid invoice(s) totalling {owed:.2f}; "
            "back dues must be paid in full before reinstatement"
        )

    config = billing_config.config_for_organization(organization)
    with db.transaction() as conn:
        membership = store.get_membership(membership_id, conn=conn)
        paid_months = membership.paid_months
        fields: dict = {"cancelled_date": None, "subscription_status": SubscriptionStatus.OK}
        if reset_paid_months is not None:
            if reset_paid_months < 0:
                raise ValidationError("reset_paid_months must not be negative")
            store.record_paid_months_adjustment(
                membership.id, paid_months, reset_paid_months, actor, reason, conn=conn
            )
            paid_months = reset_paid_months
            fields["paid_months"] = paid_months
        target = standing_status(paid_months, config)
        return transition_status(membership, target, f"reinstated_by:{actor}", fields, conn=conn)
