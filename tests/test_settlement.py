import dataclasses
from datetime import date, datetime, timezone

import pytest

import memberships
import settlement
import store
from errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from models import (
    BillingFrequency,
    EnrollmentFeeStatus,
    MembershipStatus,
    PaymentStatus,
    PaymentType,
    SettlementOutcome,
    SubscriptionStatus,
)

PAID_AT = datetime(2025, 3, 2, 18, 0, tzinfo=timezone.utc)


def settle(payment_id, event_id, outcome=SettlementOutcome.SUCCEEDED, **kwargs):
    kwargs.setdefault("occurred_at", PAID_AT)
    return settlement.settle_payment(payment_id, event_id, outcome, **kwargs)


def test_duplicate_event_credits_months_once(make_membership, make_payment):
    membership = make_membership(paid_months=10, next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)

    first = settle(payment.id, "evt_1", amount_paid=40)
    second = settle(payment.id, "evt_1", amount_paid=40)

    assert first.new_paid_months == 11
    assert not first.duplicate
    assert second.duplicate
    assert second.new_paid_months == 11
    assert store.get_membership(membership.id).paid_months == 11


@pytest.mark.parametrize(
    "frequency, months",
    [(BillingFrequency.MONTHLY, 1), (BillingFrequency.BIANNUAL, 6), (BillingFrequency.ANNUAL, 12)],
)
def test_credit_per_frequency_applied_once(make_membership, make_payment, frequency, months):
    membership = make_membership(billing_frequency=frequency, next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership, months_credited=months)

    settle(payment.id, "evt_freq")
    settle(payment.id, "evt_freq")

    assert store.get_membership(membership.id).paid_months == months


def test_same_payment_under_a_second_event_id_is_not_credited_again(make_membership, make_payment):
    membership = make_membership(paid_months=3, next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)

    settle(payment.id, "evt_a")
    again = settle(payment.id, "evt_b")

    assert again.duplicate
    assert again.new_paid_months == 4
    assert store.get_membership(membership.id).paid_months == 4


def test_crossing_eligibility_threshold(make_membership, make_payment):
    membership = make_membership(
        status=MembershipStatus.WAITING_PERIOD, paid_months=59, next_payment_due=date(2025, 3, 1)
    )
    first = settle(make_payment(membership).id, "evt_59")

    assert first.new_paid_months == 60
    assert first.new_status == MembershipStatus.ACTIVE
    assert first.became_eligible is True
    stored = store.get_membership(membership.id)
    assert stored.status == MembershipStatus.ACTIVE
    assert stored.eligible_date == date(2025, 3, 2)

    second = settle(make_payment(membership, due_date=date(2025, 4, 1)).id, "evt_60")
    assert second.new_paid_months == 61
    assert second.became_eligible is False
    assert store.get_membership(membership.id).eligible_date == date(2025, 3, 2)


def test_next_payment_due_advances_from_prior_value_not_now(make_membership, make_payment):
    membership = make_membership(next_payment_due=date(2025, 1, 15))
    payment = make_payment(membership, due_date=date(2025, 1, 15))

    # paid six weeks late; the anniversary day is kept
    settle(payment.id, "evt_late", occurred_at=datetime(2025, 2, 28, 20, 0, tzinfo=timezone.utc))

    stored = store.get_membership(membership.id)
    assert stored.next_payment_due == date(2025, 2, 15)
    assert stored.last_payment_date == date(2025, 2, 28)


def test_back_dues_and_enrollment_fee_do_not_move_next_due(make_membership, make_payment):
    membership = make_membership(next_payment_due=date(2025, 4, 15), enrollment_fee_status=EnrollmentFeeStatus.UNPAID)
    back = make_payment(membership, type=PaymentType.BACK_DUES)
    fee = make_payment(membership, type=PaymentType.ENROLLMENT_FEE, months_credited=0, amount=100)

    settle(back.id, "evt_back")
    result = settle(fee.id, "evt_fee")

    stored = store.get_membership(membership.id)
    assert result.new_paid_months == 1
    assert stored.next_payment_due == date(2025, 4, 15)
    assert stored.enrollment_fee_status == EnrollmentFeeStatus.PAID


def test_lapsed_member_returns_to_good_standing(make_membership, make_payment):
    membership = make_membership(status=MembershipStatus.LAPSED, paid_months=20, next_payment_due=date(2025, 1, 1))
    result = settle(make_payment(membership, due_date=date(2025, 1, 1)).id, "evt_lapsed")

    assert result.new_status == MembershipStatus.WAITING_PERIOD
    assert store.get_membership(membership.id).status == MembershipStatus.WAITING_PERIOD


def test_failure_marks_payment_and_flags_subscription_only(make_membership, make_payment):
    membership = make_membership(paid_months=12, next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)

    result = settle(payment.id, "evt_fail", SettlementOutcome.FAILED, notes="card_declined")

    assert result.outcome == SettlementOutcome.FAILED
    assert store.get_payment(payment.id).status == PaymentStatus.FAILED
    stored = store.get_membership(membership.id)
    assert stored.paid_months == 12
    assert stored.status == MembershipStatus.ACTIVE
    assert stored.subscription_status == SubscriptionStatus.PAYMENT_ISSUE

    # a retry that succeeds clears the payment issue
    settle(payment.id, "evt_retry")
    stored = store.get_membership(membership.id)
    assert stored.paid_months == 13
    assert stored.subscription_status == SubscriptionStatus.OK


def test_late_failure_never_undoes_completion(make_membership, make_payment):
    membership = make_membership(next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)
    settle(payment.id, "evt_ok")

    result = settle(payment.id, "evt_late_fail", SettlementOutcome.FAILED)

    assert result.duplicate
    assert store.get_payment(payment.id).status == PaymentStatus.COMPLETED
    assert store.get_membership(membership.id).paid_months == 1


def test_missing_payment_is_not_found():
    with pytest.raises(NotFoundError):
        settle(9999, "evt_missing")


def test_manual_payment_creates_invoice_and_is_idempotent(make_membership):
    membership = make_membership(next_payment_due=date(2025, 3, 1))

    result = settlement.record_manual_payment(
        membership.id, 40, "cash", "treasurer", paid_at=PAID_AT
    )
    payment = store.get_payment(result.payment_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.invoice_number == "INV-AL-202503-0001"
    assert payment.period_label == "March 2025"
    assert payment.recorded_by == "treasurer"

    again = settlement.record_manual_payment(
        membership.id, 40, "cash", "treasurer", payment_id=payment.id, paid_at=PAID_AT
    )
    assert again.duplicate
    assert store.get_membership(membership.id).paid_months == 1


def test_manual_payment_rejects_gateway_method(make_membership):
    with pytest.raises(ValidationError):
        settlement.record_manual_payment(make_membership().id, 40, "gateway", "treasurer")


def test_manual_back_dues_needs_months(make_membership):
    with pytest.raises(ValidationError):
        settlement.record_manual_payment(make_membership().id, 40, "check", "treasurer", payment_type="back_dues")


def test_refund_keeps_paid_months(make_membership, make_payment):
    membership = make_membership(paid_months=5, next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)
    settle(payment.id, "evt_refund")

    refunded = settlement.refund_payment(payment.id, "duplicate charge", actor="treasurer")

    assert refunded.status == PaymentStatus.REFUNDED
    assert store.get_membership(membership.id).paid_months == 6
    with pytest.raises(ValidationError):
        settlement.refund_payment(payment.id, "again")
    with pytest.raises(ValidationError):
        settle(payment.id, "evt_after_refund")


def test_resubmitted_manual_entry_settles_once(make_membership):
    membership = make_membership(next_payment_due=date(2025, 3, 1))

    first = settlement.record_manual_payment(
        membership.id, 40, "cash", "treasurer", paid_at=PAID_AT, submission_key="form-1"
    )
    again = settlement.record_manual_payment(
        membership.id, 40, "cash", "treasurer", paid_at=PAID_AT, submission_key="form-1"
    )

    assert not first.duplicate
    assert again.duplicate
    assert again.payment_id == first.payment_id
    stored = store.get_membership(membership.id)
    assert stored.paid_months == 1
    assert stored.next_payment_due == date(2025, 4, 1)
    assert len(store.list_payments(membership.id)) == 1


def test_manual_dues_settle_the_open_invoice_for_the_due_date(make_membership, make_payment):
    membership = make_membership(next_payment_due=date(2025, 3, 1))
    invoice = make_payment(membership)

    result = settlement.record_manual_payment(membership.id, 40, "check", "treasurer", paid_at=PAID_AT)

    assert result.payment_id == invoice.id
    assert [p.status for p in store.list_payments(membership.id)] == [PaymentStatus.COMPLETED]


def test_store_failure_rolls_back_and_propagates(make_membership, make_payment, monkeypatch):
    membership = make_membership(next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)

    real_record = store.record_settlement

    def broken_record(event_key, result, conn=None):
        raise PersistenceError("disk I/O error")

    monkeypatch.setattr(store, "record_settlement", broken_record)
    with pytest.raises(PersistenceError):
        settle(payment.id, "evt_io")

    assert store.get_payment(payment.id).status == PaymentStatus.PENDING
    assert store.get_membership(membership.id).paid_months == 0
    assert store.get_settlement("evt_io") is None

    # the sender redelivers once the store is back
    monkeypatch.setattr(store, "record_settlement", real_record)
    assert settle(payment.id, "evt_io").new_paid_months == 1


def test_lost_status_race_without_a_winner_is_a_conflict(make_membership, make_payment, monkeypatch):
    membership = make_membership(next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)
    monkeypatch.setattr(store, "transition_payment", lambda *args, **kwargs: False)

    with pytest.raises(ConflictError):
        settle(payment.id, "evt_race")

    assert store.get_membership(membership.id).paid_months == 0
    assert store.get_settlement("evt_race") is None


def test_lost_status_race_returns_the_winning_settlement(make_membership, make_payment, monkeypatch):
    membership = make_membership(next_payment_due=date(2025, 3, 1))
    payment = make_payment(membership)
    settle(payment.id, "evt_winner")

    real_get_payment = store.get_payment
    reads = []

    def stale_get_payment(payment_id, conn=None):
        # the first read still sees the payment as pending
        current = real_get_payment(payment_id, conn=conn)
        if not reads:
            reads.append(payment_id)
            return dataclasses.replace(current, status=PaymentStatus.PENDING)
        return current

    monkeypatch.setattr(store, "get_payment", stale_get_payment)
    result = settle(payment.id, "evt_loser")

    assert result.duplicate
    assert result.new_paid_months == 1
    assert store.get_membership(membership.id).paid_months == 1


def test_member_who_has_not_signed_is_not_flagged_eligible(make_membership, make_payment):
    membership = make_membership(
        status=MembershipStatus.AWAITING_SIGNATURE,
        agreement_signed_at=None,
        paid_months=59,
        next_payment_due=date(2025, 3, 1),
    )

    result = settle(make_payment(membership).id, "evt_unsigned")

    assert result.new_paid_months == 60
    assert result.new_status == MembershipStatus.AWAITING_SIGNATURE
    assert not result.became_eligible
    assert store.get_membership(membership.id).eligible_date is None

    assert memberships.mark_agreement_signed(membership.id, signed_at=PAID_AT) == MembershipStatus.ACTIVE
    assert store.get_membership(membership.id).eligible_date == date(2025, 3, 2)
