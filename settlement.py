"""
settlement.py
Settlement engine: applies a payment outcome (gateway event or manual entry)
to the payment, the membership's paid-months counter and its status.

Each settlement is keyed: gateway event id, "manual-entry:<submission key>" for
an admin form, or "manual:<payment id>" when no submission key is given. The
key, the payment status compare-and-swap and the membership update are written
in one store transaction, so a replayed or duplicated event returns the first
result instead of crediting the months again.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

import billing_config
import db
import invoices
import store
import utils
from errors import ConflictError, NotFoundError, ValidationError
from memberships import standing_status, transition_status
from models import (
    MANUAL_METHODS,
    OPEN_PAYMENT_STATUSES,
    EnrollmentFeeStatus,
    Membership,
    MembershipStatus,
    Organization,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    SettlementOutcome,
    SettlementResult,
    SubscriptionStatus,
)

logger = logging.getLogger("dues.settlement")

# failure can only land on a payment that has not failed or completed yet
_FAILABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
# members past onboarding; pending/awaiting_signature become eligible when they sign
_ELIGIBLE_ON_SETTLEMENT = (MembershipStatus.WAITING_PERIOD, MembershipStatus.ACTIVE, MembershipStatus.LAPSED)


def manual_settlement_key(payment_id: int) -> str:
    return f"manual:{payment_id}"


def _current_state(payment: Payment, membership: Membership, outcome: SettlementOutcome) -> SettlementResult:
    return SettlementResult(
        payment_id=payment.id,
        membership_id=membership.id,
        outcome=outcome,
        new_paid_months=membership.paid_months,
        new_status=membership.status,
        duplicate=True,
    )


def _advance_next_due(membership: Membership, payment: Payment, paid_day: date) -> date | None:
    """Next due date after a dues payment: forward from the prior due date by the months it covers."""
    if payment.type != PaymentType.DUES or payment.months_credited <= 0:
        return membership.next_payment_due
    base = membership.next_payment_due or payment.due_date or payment.period_start or paid_day
    advanced = utils.add_months(base, payment.months_credited, membership.billing_anniversary_day)
    if membership.next_payment_due and advanced <= membership.next_payment_due:
        return membership.next_payment_due
    return advanced


def _apply_success(
    conn,
    payment: Payment,
    membership: Membership,
    organization: Organization,
    amount_paid: float | None,
    paid_at: datetime,
    method: PaymentMethod,
    gateway_reference: str | None,
    recorded_by: str | None,
    notes: str | None,
) -> SettlementResult:
    if payment.status == PaymentStatus.COMPLETED:
        # settled before under another key
        prior = store.latest_settlement_for_payment(payment.id, conn=conn)
        logger.info("payment_already_completed", extra={"payment_id": payment.id})
        return prior or _current_state(payment, membership, SettlementOutcome.SUCCEEDED)
    if payment.status == PaymentStatus.REFUNDED:
        raise ValidationError(f"Payment {payment.id} was refunded and cannot be settled again")

    amount_paid = payment.amount if amount_paid is None else round(float(amount_paid), 2)
    if abs(amount_paid - payment.amount) >= 0.01:
        logger.warning(
            "settlement_amount_mismatch",
            extra={"payment_id": payment.id, "expected_amount": payment.amount, "amount_paid": amount_paid},
        )

    fields: dict = {
        "status": PaymentStatus.COMPLETED,
        "method": method,
        "paid_at": paid_at,
        "amount_paid": amount_paid,
        "requires_review": False,
    }
    if gateway_reference and not payment.gateway_reference:
        fields["gateway_reference"] = gateway_reference
    if recorded_by:
        fields["recorded_by"] = recorded_by
    if notes:
        fields["notes"] = notes

    if not store.transition_payment(payment.id, OPEN_PAYMENT_STATUSES, fields, conn=conn):
        raise ConflictError(f"Payment {payment.id} changed status during settlement")

    config = billing_config.config_for_organization(organization)
    paid_day = utils.today_in_timezone(organization.timezone, paid_at)
    new_paid = membership.paid_months + payment.months_credited
    threshold = config.eligibility_months
    became_eligible = (
        membership.paid_months < threshold <= new_paid and membership.status in _ELIGIBLE_ON_SETTLEMENT
    )

    member_fields: dict = {
        "paid_months": new_paid,
        "last_payment_date": paid_day,
        "subscription_status": SubscriptionStatus.OK,
    }
    next_due = _advance_next_due(membership, payment, paid_day)
    if next_due != membership.next_payment_due:
        member_fields["next_payment_due"] = next_due
    if payment.type == PaymentType.ENROLLMENT_FEE:
        member_fields["enrollment_fee_status"] = EnrollmentFeeStatus.PAID
    if became_eligible and membership.eligible_date is None:
        member_fields["eligible_date"] = paid_day

    new_status = membership.status
    if membership.status == MembershipStatus.LAPSED:
        new_status = standing_status(new_paid, config)
    elif membership.status == MembershipStatus.WAITING_PERIOD and new_paid >= threshold:
        new_status = MembershipStatus.ACTIVE

    if new_status != membership.status:
        transition_status(membership, new_status, f"payment_settled:{payment.id}", member_fields, conn=conn)
    else:
        store.update_membership(membership.id, member_fields, conn=conn)

    logger.info(
        "payment_settled",
        extra={
            "payment_id": payment.id,
            "membership_id": membership.id,
            "payment_type": payment.type.value,
            "months_credited": payment.months_credited,
            "new_paid_months": new_paid,
            "new_status": new_status.value,
        },
    )
    if became_eligible:
        logger.info(
            "membership_became_eligible",
            extra={"membership_id": membership.id, "paid_months": new_paid, "eligibility_months": threshold},
        )
    return SettlementResult(
        payment_id=payment.id,
        membership_id=membership.id,
        outcome=SettlementOutcome.SUCCEEDED,
        new_paid_months=new_paid,
        new_status=new_status,
        became_eligible=became_eligible,
    )


def _apply_failure(
    conn,
    payment: Payment,
    membership: Membership,
    gateway_reference: str | None,
    notes: str | None,
) -> SettlementResult:
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        # a late failure never undoes a completed payment
        logger.warning(
            "failure_after_completion_ignored",
            extra={"payment_id": payment.id, "payment_status": payment.status.value},
        )
        return _current_state(payment, membership, SettlementOutcome.FAILED)

    if payment.status in _FAILABLE_STATUSES:
        fields: dict = {"status": PaymentStatus.FAILED}
        if gateway_reference and not payment.gateway_reference:
            fields["gateway_reference"] = gateway_reference
        if notes:
            fields["notes"] = notes
        if not store.transition_payment(payment.id, _FAILABLE_STATUSES, fields, conn=conn):
            raise ConflictError(f"Payment {payment.id} changed status during settlement")

    store.update_membership(membership.id, {"subscription_status": SubscriptionStatus.PAYMENT_ISSUE}, conn=conn)
    logger.warning(
        "payment_failed",
        extra={"payment_id": payment.id, "membership_id": membership.id, "failure_reason": notes},
    )
    return SettlementResult(
        payment_id=payment.id,
        membership_id=membership.id,
        outcome=SettlementOutcome.FAILED,
        new_paid_months=membership.paid_months,
        new_status=membership.status,
    )


def settle_payment(
    payment_id: int,
    external_event_id: str,
    outcome: SettlementOutcome | str,
    amount_paid: float | None = None,
    occurred_at: datetime | None = None,
    method: PaymentMethod | str = PaymentMethod.GATEWAY,
    gateway_reference: str | None = None,
    recorded_by: str | None = None,
    notes: str | None = None,
) -> SettlementResult:
    """
    Apply one settlement event to a payment and its membership.

    Success completes the payment, adds its months_credited to paid_months,
    advances next_payment_due (dues only) and moves waiting_period/lapsed
    members along by the eligibility threshold. Failure marks the payment
    failed and flags the subscription; paid_months and status stay put.

    Calling twice with the same `external_event_id` returns the first result
    with duplicate=True. NotFoundError when the payment does not exist;
    PersistenceError propagates so the sender can redeliver.
    """
    if not external_event_id:
        raise ValidationError("A settlement needs an event id")
    try:
        outcome = SettlementOutcome(outcome)
        method = PaymentMethod(method)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    occurred_at = occurred_at or datetime.now(timezone.utc)

    prior = store.get_settlement(external_event_id)
    if prior is not None:
        logger.info("settlement_replayed", extra={"event_key": external_event_id, "payment_id": prior.payment_id})
        return prior

    try:
        with db.transaction() as conn:
            # re-check under the write lock
            prior = store.get_settlement(external_event_id, conn=conn)
            if prior is not None:
                return prior
            payment = store.get_payment(payment_id, conn=conn)
            membership = store.get_membership(payment.membership_id, conn=conn)
            organization = store.get_organization(membership.organization_id, conn=conn)

            if outcome == SettlementOutcome.SUCCEEDED:
                result = _apply_success(
                    conn, payment, membership, organization, amount_paid, occurred_at,
                    method, gateway_reference, recorded_by, notes,
                )
            else:
                result = _apply_failure(conn, payment, membership, gateway_reference, notes)
            store.record_settlement(external_event_id, result, conn=conn)
            return result
    except NotFoundError:
        logger.warning("settlement_target_missing", extra={"event_key": external_event_id, "payment_id": payment_id})
        raise
    except ConflictError:
        # another writer won; its recorded result is the answer
        prior = store.get_settlement(external_event_id)
        if prior is not None:
            return prior
        payment = store.get_payment(payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            return store.latest_settlement_for_payment(payment_id) or _current_state(
                payment, store.get_membership(payment.membership_id), outcome
            )
        raise


def submission_settlement_key(submission_key: str) -> str:
    return f"manual-entry:{submission_key}"


def _manual_invoice(
    organization: Organization,
    membership: Membership,
    payment_type: PaymentType,
    amount: float,
    months: int,
    today: date,
    settlement_key: str | None,
) -> int:
    if payment_type == PaymentType.DUES:
        # dues for the current period settle the invoice the billing run may already have made
        payment_id, _ = invoices.find_or_create_dues_invoice(
            organization, membership, membership.next_payment_due or today,
            amount=amount, months=months, settlement_key=settlement_key,
        )
        return payment_id

    fields: dict = {
        "organization_id": membership.organization_id,
        "membership_id": membership.id,
        "type": payment_type,
        "status": PaymentStatus.PENDING,
        "amount": amount,
    }
    if payment_type == PaymentType.ENROLLMENT_FEE:
        fields.update({
            "invoice_number": invoices.new_invoice_number(organization, today),
            "due_date": today,
            "months_credited": 0,
            "period_label": "Enrollment fee",
        })
    else:
        fields.update(invoices.invoice_metadata(organization, membership, today, months))
    return store.insert_payment(fields)


def record_manual_payment(
    membership_id: int,
    amount: float,
    method: PaymentMethod | str,
    recorded_by: str,
    payment_type: PaymentType | str = PaymentType.DUES,
    months_credited: int | None = None,
    payment_id: int | None = None,
    paid_at: datetime | None = None,
    notes: str | None = None,
    submission_key: str | None = None,
) -> SettlementResult:
    """
    Cash/check/other payment entered by an admin.

    Settles the given open invoice (`payment_id`) or creates one first; a dues
    payment reuses the live invoice for the membership's next due date.

    `submission_key` identifies one filled-in form. Submitting the same key
    again returns the first result with duplicate=True and writes nothing.
    Without it the settlement is keyed on the payment id, which only catches
    repeats against an existing invoice.
    """
    try:
        method = PaymentMethod(method)
        payment_type = PaymentType(payment_type)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    if method not in MANUAL_METHODS:
        raise ValidationError(f"{method.value} is not a manual payment method")
    if amount is None or amount <= 0:
        raise ValidationError("Payment amount must be positive")
    if not recorded_by:
        raise ValidationError("recorded_by is required for a manual payment")

    settlement_key = submission_settlement_key(submission_key) if submission_key else None
    if settlement_key:
        prior = store.get_settlement(settlement_key)
        if prior is not None:
            logger.info(
                "manual_payment_resubmitted",
                extra={"membership_id": membership_id, "payment_id": prior.payment_id, "recorded_by": recorded_by},
            )
            return prior

    membership = store.get_membership(membership_id)
    if payment_id is not None:
        payment = store.get_payment(payment_id)
        if payment.membership_id != membership.id:
            raise ValidationError(f"Payment {payment_id} does not belong to membership {membership_id}")
    else:
        if months_credited is None:
            if payment_type == PaymentType.BACK_DUES:
                raise ValidationError("months_credited is required for a back dues payment")
            months_credited = membership.months_per_period if payment_type == PaymentType.DUES else 0
        if months_credited < 0:
            raise ValidationError("months_credited must not be negative")
        organization = store.get_organization(membership.organization_id)
        today = utils.today_in_timezone(organization.timezone, paid_at)
        payment_id = _manual_invoice(
            organization, membership, payment_type, round(float(amount), 2), months_credited, today, settlement_key
        )

    logger.info(
        "manual_payment_recorded",
        extra={"payment_id": payment_id, "membership_id": membership_id, "method": method.value, "recorded_by": recorded_by},
    )
    return settle_payment(
        payment_id,
        settlement_key or manual_settlement_key(payment_id),
        SettlementOutcome.SUCCEEDED,
        amount_paid=amount,
        occurred_at=paid_at,
        method=method,
        recorded_by=recorded_by,
        notes=notes,
    )


def refund_payment(payment_id: int, reason: str, actor: str | None = None) -> Payment:
    """
    completed -> refunded. paid_months is left as is; taking the months back is
    an explicit override_paid_months decision.
    """
    if not reason or not reason.strip():
        raise ValidationError("A refund needs a reason")
    payment = store.get_payment(payment_id)
    fields: dict = {
        "status": PaymentStatus.REFUNDED,
        "refunded_at": datetime.now(timezone.utc),
        "notes": f"Refunded: {reason.strip()}",
    }
    if actor:
        fields["recorded_by"] = actor
    if not store.transition_payment(payment_id, (PaymentStatus.COMPLETED,), fields):
        raise ValidationError(f"Payment {payment_id} is {payment.status.value}; only completed payments can be refunded")
    logger.warning(
        "payment_refunded",
        extra={
            "payment_id": payment_id,
            "membership_id": payment.membership_id,
            "months_credited": payment.months_credited,
            "reason": reason,
            "paid_months_unchanged": True,
        },
    )
    return store.get_payment(payment_id)
