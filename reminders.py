"""
reminders.py
Reminder scheduler: the recurring sweep over overdue payments, the manual
"send reminder now" action and reminder administration (pause/resume/review).

For a payment with reminder_count = n the day-offset threshold is
reminder_schedule[n]. A reminder fires when the payment is at least that many
days past due and no reminder went out earlier the same local day. Reaching
max_reminders flags the payment requires_review and automated reminders stop.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

import billing_config
import store
import utils
from errors import DeliveryError, PersistenceError, ValidationError
from logging_config import run_context
from models import REMINDABLE_STATUSES, BillingConfig, Membership, Payment
from notifications import PAYMENT_REMINDER, Notifier, get_default_notifier

logger = logging.getLogger("dues.reminders")


@dataclass
class ReminderRunResult:
    organization_id: int
    candidates: int = 0
    # (payment_id, reminder_number) pairs that were claimed and sent (or attempted)
    sent: list[tuple[int, int]] = field(default_factory=list)
    flagged_for_review: list[int] = field(default_factory=list)
    delivery_failures: list[int] = field(default_factory=list)
    errors: list[int] = field(default_factory=list)
    skipped: int = 0
    disabled: bool = False


def days_overdue(payment: Payment, today: date) -> int:
    if payment.due_date is None:
        return 0
    return max(utils.days_between(payment.due_date, today), 0)


def is_reminder_due(payment: Payment, config: BillingConfig, today: date, tz_name: str | None = None) -> bool:
    """Firing rule for the next reminder slot of `payment` on local day `today`."""
    if payment.due_date is None or payment.due_date > today:
        return False
    threshold = config.reminder_threshold(payment.reminder_count)
    if threshold is None:
        return False
    overdue = utils.days_between(payment.due_date, today)
    if overdue < threshold:
        return False

    if payment.reminder_sent_at is not None:
        last_sent = utils.to_local_date(payment.reminder_sent_at, tz_name)
        if utils.days_between(last_sent, today) < 1:
            return False

    # slot threshold again, after the gap guard
    return overdue >= config.reminder_schedule[payment.reminder_count]


def _variables(payment: Payment, today: date, reminder_number: int) -> dict:
    return {
        "amount": f"{payment.amount:.2f}",
        "dueDate": payment.due_date.isoformat() if payment.due_date else None,
        "daysOverdue": days_overdue(payment, today),
        "reminderNumber": reminder_number,
        "invoiceNumber": payment.invoice_number,
    }


def _claim(payment: Payment, config: BillingConfig, now: datetime) -> tuple[bool, int, bool]:
    """Reserve the next reminder slot. Returns (claimed, reminder_number, escalated)."""
    new_count = payment.reminder_count + 1
    escalated = new_count >= config.max_reminders
    fields: dict = {"reminder_count": new_count, "reminder_sent_at": now}
    if escalated:
        fields["requires_review"] = True
    claimed = store.claim_reminder(payment.id, payment.reminder_count, fields)
    return claimed, new_count, escalated


def _deliver(notifier: Notifier, membership: Membership, payment: Payment, today: date, reminder_number: int) -> bool:
    try:
        notifier.send(PAYMENT_REMINDER, membership.member_email, _variables(payment, today, reminder_number))
    except DeliveryError:
        logger.error(
            "reminder_delivery_failed",
            exc_info=True,
            extra={"payment_id": payment.id, "membership_id": membership.id, "reminder_number": reminder_number},
        )
        return False
    except Exception:
        # a broken delegate is still only a delivery problem for this candidate
        logger.exception(
            "reminder_delivery_failed",
            extra={"payment_id": payment.id, "membership_id": membership.id, "reminder_number": reminder_number},
        )
        return False
    return True


def process_organization_reminders(
    organization_id: int,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> ReminderRunResult:
    """
    One sweep for one organization.

    Candidates are re-derived from the store on every call, so a sweep can be
    aborted and re-run at any time. Each candidate's slot is claimed with a
    guarded write before the notification goes out; a second sweep racing this
    one loses the claim and skips the candidate.
    """
    now = now or datetime.now(timezone.utc)
    notifier = notifier or get_default_notifier()
    result = ReminderRunResult(organization_id=organization_id)

    with run_context(f"reminders-{organization_id}-{uuid.uuid4().hex[:8]}"):
        organization = store.get_organization(organization_id)
        config = billing_config.config_for_organization(organization)
        if not config.send_invoice_reminders:
            logger.info("reminders_disabled", extra={"organization_id": organization_id})
            result.disabled = True
            return result

        today = utils.today_in_timezone(organization.timezone, now)
        candidates = store.list_reminder_candidates(organization_id, today, config.max_reminders)
        result.candidates = len(candidates)
        logger.info(
            "reminder_sweep_started",
            extra={"organization_id": organization_id, "today": today.isoformat(), "candidates": len(candidates)},
        )

        for payment in candidates:
            if not is_reminder_due(payment, config, today, organization.timezone):
                result.skipped += 1
                continue
            try:
                membership = store.get_membership(payment.membership_id)
                claimed, number, escalated = _claim(payment, config, now)
            except PersistenceError:
                logger.exception("reminder_candidate_failed", extra={"payment_id": payment.id})
                result.errors.append(payment.id)
                continue
            if not claimed:
                logger.info("reminder_already_claimed", extra={"payment_id": payment.id})
                result.skipped += 1
                continue

            if not _deliver(notifier, membership, payment, today, number):
                result.delivery_failures.append(payment.id)
            result.sent.append((payment.id, number))
            logger.info(
                "reminder_sent",
                extra={
                    "payment_id": payment.id,
                    "membership_id": membership.id,
                    "reminder_number": number,
                    "days_overdue": days_overdue(payment, today),
                },
            )
            if escalated:
                result.flagged_for_review.append(payment.id)
                logger.warning(
                    "payment_requires_review",
                    extra={"payment_id": payment.id, "reminder_count": number},
                )

        logger.info(
            "reminder_sweep_finished",
            extra={
                "organization_id": organization_id,
                "sent": len(result.sent),
                "flagged_for_review": len(result.flagged_for_review),
                "delivery_failures": len(result.delivery_failures),
                "errors": len(result.errors),
            },
        )
    return result


def send_payment_reminder(
    payment_id: int,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> tuple[int, bool]:
    """
    Admin "send reminder now": same bookkeeping and escalation as the sweep, no
    schedule threshold. Returns (reminder_number, delivered).
    """
    now = now or datetime.now(timezone.utc)
    notifier = notifier or get_default_notifier()
    payment = store.get_payment(payment_id)
    if payment.status not in REMINDABLE_STATUSES:
        raise ValidationError(f"Payment {payment_id} is {payment.status.value}; only pending or failed payments can be reminded")

    membership = store.get_membership(payment.membership_id)
    organization = store.get_organization(payment.organization_id)
    config = billing_config.config_for_organization(organization)
    today = utils.today_in_timezone(organization.timezone, now)

    claimed, number, escalated = _claim(payment, config, now)
    if not claimed:
        raise ValidationError(f"Payment {payment_id} was reminded concurrently; reload and retry")
    delivered = _deliver(notifier, membership, payment, today, number)
    logger.info(
        "manual_reminder_sent",
        extra={"payment_id": payment_id, "reminder_number": number, "delivered": delivered},
    )
    if escalated:
        logger.warning("payment_requires_review", extra={"payment_id": payment_id, "reminder_count": number})
    return number, delivered


def pause_reminders(payment_id: int) -> None:
    store.get_payment(payment_id)
    store.update_payment(payment_id, {"reminders_paused": True})
    logger.info("reminders_paused", extra={"payment_id": payment_id})


def resume_reminders(payment_id: int) -> None:
    store.get_payment(payment_id)
    store.update_payment(payment_id, {"reminders_paused": False})
    logger.info("reminders_resumed", extra={"payment_id": payment_id})


def resolve_review(payment_id: int, reset_count: bool = False) -> Payment:
    """Clear requires_review after a human acted; `reset_count` restarts the reminder schedule."""
    payment = store.get_payment(payment_id)
    fields: dict = {"requires_review": False}
    if reset_count:
        fields.update({"reminder_count": 0, "reminder_sent_at": None})
    store.update_payment(payment_id, fields)
    logger.info("review_resolved", extra={"payment_id": payment_id, "reset_count": reset_count})
    return store.get_payment(payment.id)
