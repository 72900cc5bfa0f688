from datetime import date, datetime, timedelta, timezone

import pytest

import billing_config
import reminders
import store
from errors import PersistenceError, ValidationError
from models import PaymentStatus
from notifications import PAYMENT_REMINDER

DUE = date(2025, 3, 1)


def at_day(days_after_due, hour_utc=20):
    """An instant that is `days_after_due` days past DUE in Los Angeles."""
    day = DUE + timedelta(days=days_after_due)
    return datetime(day.year, day.month, day.day, hour_utc, 0, tzinfo=timezone.utc)


def sweep(org, notifier, days_after_due, hour_utc=20):
    return reminders.process_organization_reminders(org.id, now=at_day(days_after_due, hour_utc), notifier=notifier)


def test_schedule_fires_each_slot_once_then_escalates(org, make_membership, make_payment, notifier):
    payment = make_payment(make_membership(), due_date=DUE)

    result = sweep(org, notifier, 3)
    assert result.sent == [(payment.id, 1)]
    template, recipient, variables = notifier.sent[0]
    assert template == PAYMENT_REMINDER
    assert recipient == "yusuf@example.com"
    assert variables["reminderNumber"] == 1
    assert variables["daysOverdue"] == 3
    assert variables["amount"] == "40.00"

    # same local day, later hour: no second reminder
    assert sweep(org, notifier, 3, hour_utc=23).sent == []
    # day 5 is between slots
    assert sweep(org, notifier, 5).sent == []

    assert sweep(org, notifier, 7).sent == [(payment.id, 2)]
    assert store.get_payment(payment.id).requires_review is False

    third = sweep(org, notifier, 14)
    assert third.sent == [(payment.id, 3)]
    assert third.flagged_for_review == [payment.id]
    stored = store.get_payment(payment.id)
    assert stored.reminder_count == 3
    assert stored.requires_review is True

    for day in (15, 30, 90):
        assert sweep(org, notifier, day).sent == []
    assert len(notifier.sent) == 3


def test_not_due_before_first_threshold(org, make_membership, make_payment, notifier):
    make_payment(make_membership(), due_date=DUE)
    assert sweep(org, notifier, 2).sent == []
    assert notifier.attempts == []


def test_late_first_reminder_does_not_skip_slots(org, make_membership, make_payment, notifier):
    payment = make_payment(make_membership(), due_date=DUE)

    # scheduler was down until day 20: one reminder per day, never two in a day
    assert sweep(org, notifier, 20).sent == [(payment.id, 1)]
    assert sweep(org, notifier, 20, hour_utc=23).sent == []
    assert sweep(org, notifier, 21).sent == [(payment.id, 2)]


def test_delivery_failure_does_not_stop_the_sweep(org, make_membership, make_payment, make_notifier):
    bad = make_payment(make_membership(member_email="bounce@example.com"), due_date=DUE)
    crash = make_payment(make_membership(member_email="crash@example.com"), due_date=DUE)
    good = make_payment(make_membership(member_email="ok@example.com"), due_date=DUE)
    notifier = make_notifier(fail_for={"bounce@example.com"}, crash_for={"crash@example.com"})

    result = sweep(org, notifier, 3)

    assert len(notifier.attempts) == 3
    assert [r for _, r, _ in notifier.sent] == ["ok@example.com"]
    assert sorted(result.delivery_failures) == sorted([bad.id, crash.id])
    for payment in (bad, crash, good):
        assert store.get_payment(payment.id).reminder_count == 1


def test_skips_paused_completed_and_future_payments(org, make_membership, make_payment, notifier):
    membership = make_membership()
    paused = make_payment(membership, due_date=DUE, reminders_paused=True)
    make_payment(membership, due_date=date(2025, 2, 1), status=PaymentStatus.COMPLETED)
    make_payment(membership, due_date=DUE + timedelta(days=10))
    failed = make_payment(membership, due_date=DUE, status=PaymentStatus.FAILED)

    result = sweep(org, notifier, 3)

    assert result.sent == [(failed.id, 1)]
    reminders.resume_reminders(paused.id)
    assert sweep(org, notifier, 4).sent == [(paused.id, 1)]


def test_reminders_switched_off(org, make_membership, make_payment, notifier):
    billing_config.update_billing_config(org.id, {"send_invoice_reminders": False})
    make_payment(make_membership(), due_date=DUE)

    result = sweep(org, notifier, 10)

    assert result.disabled
    assert notifier.attempts == []


def test_manual_reminder_bypasses_schedule(make_membership, make_payment, notifier):
    payment = make_payment(make_membership(), due_date=DUE)

    number, delivered = reminders.send_payment_reminder(payment.id, notifier=notifier, now=at_day(1))

    assert (number, delivered) == (1, True)
    assert notifier.sent[0][2]["daysOverdue"] == 1
    assert store.get_payment(payment.id).reminder_count == 1


def test_manual_reminder_escalates_and_rejects_completed(make_membership, make_payment, notifier):
    membership = make_membership()
    payment = make_payment(membership, due_date=DUE, reminder_count=2)
    reminders.send_payment_reminder(payment.id, notifier=notifier, now=at_day(1))
    assert store.get_payment(payment.id).requires_review is True

    done = make_payment(membership, due_date=date(2025, 2, 1), status=PaymentStatus.COMPLETED)
    with pytest.raises(ValidationError):
        reminders.send_payment_reminder(done.id, notifier=notifier)


def test_resolve_review_with_reset_restarts_schedule(org, make_membership, make_payment, notifier):
    payment = make_payment(make_membership(), due_date=DUE, reminder_count=3, requires_review=True)
    assert sweep(org, notifier, 20).sent == []

    resolved = reminders.resolve_review(payment.id, reset_count=True)

    assert resolved.requires_review is False
    assert resolved.reminder_count == 0
    assert sweep(org, notifier, 20).sent == [(payment.id, 1)]


def test_is_reminder_due_rules(make_membership, make_payment):
    config = billing_config.DEFAULT_BILLING_CONFIG
    payment = make_payment(make_membership(), due_date=DUE, reminder_count=1,
                           reminder_sent_at=at_day(3))
    tz = "America/Los_Angeles"

    assert not reminders.is_reminder_due(payment, config, DUE + timedelta(days=6), tz)
    assert reminders.is_reminder_due(payment, config, DUE + timedelta(days=7), tz)
    exhausted = make_payment(make_membership(), due_date=DUE, reminder_count=3)
    assert not reminders.is_reminder_due(exhausted, config, DUE + timedelta(days=60), tz)


def test_store_failure_on_one_candidate_does_not_stop_the_sweep(org, make_membership, make_payment, notifier, monkeypatch):
    broken = make_payment(make_membership(member_email="first@example.com"), due_date=DUE)
    healthy = make_payment(make_membership(member_email="second@example.com"), due_date=DUE)
    real_claim = store.claim_reminder

    def claim(payment_id, expected_count, fields):
        if payment_id == broken.id:
            raise PersistenceError("database is locked")
        return real_claim(payment_id, expected_count, fields)

    monkeypatch.setattr(store, "claim_reminder", claim)
    result = sweep(org, notifier, 3)

    assert result.errors == [broken.id]
    assert result.sent == [(healthy.id, 1)]
    assert [recipient for _, recipient, _ in notifier.sent] == ["second@example.com"]
    assert store.get_payment(broken.id).reminder_count == 0


def test_lost_claim_sends_nothing(org, make_membership, make_payment, notifier, monkeypatch):
    payment = make_payment(make_membership(), due_date=DUE)
    monkeypatch.setattr(store, "claim_reminder", lambda *args, **kwargs: False)

    result = sweep(org, notifier, 3)

    assert result.sent == []
    assert result.skipped == 1
    assert notifier.attempts == []
    assert store.get_payment(payment.id).reminder_count == 0
