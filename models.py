"""
models.py
Domain types for memberships, payments and billing (enums, dataclasses, row mapping).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class BillingFrequency(str, Enum):
    MONTHLY = "monthly"
    BIANNUAL = "biannual"
    ANNUAL = "annual"


# Months per billing period (also the months a regular dues payment credits)
FREQUENCY_MONTHS = {
    BillingFrequency.MONTHLY: 1,
    BillingFrequency.BIANNUAL: 6,
    BillingFrequency.ANNUAL: 12,
}


class MembershipStatus(str, Enum):
    PENDING = "pending"
    AWAITING_SIGNATURE = "awaiting_signature"
    WAITING_PERIOD = "waiting_period"
    ACTIVE = "active"
    LAPSED = "lapsed"
    CANCELLED = "cancelled"


STATUS_TRANSITIONS: dict[MembershipStatus, frozenset[MembershipStatus]] = {
    MembershipStatus.PENDING: frozenset({MembershipStatus.AWAITING_SIGNATURE}),
    MembershipStatus.AWAITING_SIGNATURE: frozenset({MembershipStatus.WAITING_PERIOD, MembershipStatus.ACTIVE}),
    MembershipStatus.WAITING_PERIOD: frozenset({MembershipStatus.ACTIVE, MembershipStatus.LAPSED}),
    MembershipStatus.ACTIVE: frozenset({MembershipStatus.LAPSED}),
    MembershipStatus.LAPSED: frozenset(
        {MembershipStatus.WAITING_PERIOD, MembershipStatus.ACTIVE, MembershipStatus.CANCELLED}
    ),
    # reinstatement only; requires back dues paid in full
    MembershipStatus.CANCELLED: frozenset({MembershipStatus.WAITING_PERIOD, MembershipStatus.ACTIVE}),
}

# Statuses in which dues are billed and overdue detection applies
BILLABLE_STATUSES = (MembershipStatus.WAITING_PERIOD, MembershipStatus.ACTIVE)


def can_transition(current: MembershipStatus, target: MembershipStatus) -> bool:
    return target in STATUS_TRANSITIONS.get(current, frozenset())


class EnrollmentFeeStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    WAIVED = "waived"


class SubscriptionStatus(str, Enum):
    OK = "ok"
    PAYMENT_ISSUE = "payment_issue"


class PaymentType(str, Enum):
    ENROLLMENT_FEE = "enrollment_fee"
    DUES = "dues"
    BACK_DUES = "back_dues"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    CASH = "cash"
    CHECK = "check"
    OTHER = "other"


MANUAL_METHODS = (PaymentMethod.CASH, PaymentMethod.CHECK, PaymentMethod.OTHER)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# Statuses a payment may be settled from
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)
# Statuses the reminder scheduler looks at
REMINDABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


class SettlementOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _date(value) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _datetime(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class BillingConfig:
    reminder_schedule: tuple[int, ...] = (3, 7, 14)
    max_reminders: int = 3
    eligibility_months: int = 60
    lapse_days: int = 7
    cancel_months: int = 24
    send_invoice_reminders: bool = True

    def reminder_threshold(self, index: int) -> int | None:
        """Days-past-due threshold for reminder `index` (0-based), None past the schedule end."""
        if 0 <= index < len(self.reminder_schedule):
            return self.reminder_schedule[index]
        return None


@dataclass(frozen=True)
class Organization:
    id: int
    name: str
    timezone: str
    billing_overrides: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "Organization":
        raw = row["billing_config"]
        return cls(
            id=row["id"],
            name=row["name"],
            timezone=row["timezone"],
            billing_overrides=json.loads(raw) if raw else {},
        )


@dataclass(frozen=True)
class Membership:
    id: int
    organization_id: int
    member_name: str
    member_email: str | None
    status: MembershipStatus
    billing_frequency: BillingFrequency
    dues_amount: float
    paid_months: int = 0
    billing_anchor_date: date | None = None
    billing_anniversary_day: int | None = None
    next_payment_due: date | None = None
    enrollment_fee_status: EnrollmentFeeStatus = EnrollmentFeeStatus.UNPAID
    subscription_status: SubscriptionStatus = SubscriptionStatus.OK
    agreement_signed_at: datetime | None = None
    join_date: date | None = None
    last_payment_date: date | None = None
    eligible_date: date | None = None
    cancelled_date: date | None = None

    @property
    def months_per_period(self) -> int:
        return FREQUENCY_MONTHS[self.billing_frequency]

    @classmethod
    def from_row(cls, row) -> "Membership":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            member_name=row["member_name"],
            member_email=row["member_email"],
            status=MembershipStatus(row["status"]),
            billing_frequency=BillingFrequency(row["billing_frequency"]),
            dues_amount=float(row["dues_amount"] or 0),
            paid_months=int(row["paid_months"] or 0),
            billing_anchor_date=_date(row["billing_anchor_date"]),
            billing_anniversary_day=row["billing_anniversary_day"],
            next_payment_due=_date(row["next_payment_due"]),
            enrollment_fee_status=EnrollmentFeeStatus(row["enrollment_fee_status"] or "unpaid"),
            subscription_status=SubscriptionStatus(row["subscription_status"] or "ok"),
            agreement_signed_at=_datetime(row["agreement_signed_at"]),
            join_date=_date(row["join_date"]),
            last_payment_date=_date(row["last_payment_date"]),
            eligible_date=_date(row["eligible_date"]),
            cancelled_date=_date(row["cancelled_date"]),
        )


@dataclass(frozen=True)
class Payment:
    id: int
    organization_id: int
    membership_id: int
    type: PaymentType
    status: PaymentStatus
    amount: float
    months_credited: int = 0
    method: PaymentMethod | None = None
    due_date: date | None = None
    period_start: date | None = None
    period_end: date | None = None
    period_label: str | None = None
    invoice_number: str | None = None
    gateway_reference: str | None = None
    amount_paid: float | None = None
    paid_at: datetime | None = None
    reminder_count: int = 0
    reminder_sent_at: datetime | None = None
    reminders_paused: bool = False
    requires_review: bool = False
    notes: str | None = None
    recorded_by: str | None = None

    @classmethod
    def from_row(cls, row) -> "Payment":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            membership_id=row["membership_id"],
            type=PaymentType(row["type"]),
            status=PaymentStatus(row["status"]),
            amount=float(row["amount"]),
            months_credited=int(row["months_credited"] or 0),
            method=PaymentMethod(row["method"]) if row["method"] else None,
            due_date=_date(row["due_date"]),
            period_start=_date(row["period_start"]),
            period_end=_date(row["period_end"]),
            period_label=row["period_label"],
            invoice_number=row["invoice_number"],
            gateway_reference=row["gateway_reference"],
            amount_paid=row["amount_paid"],
            paid_at=_datetime(row["paid_at"]),
            # NULL counters / flags read as zero / false
            reminder_count=int(row["reminder_count"] or 0),
            reminder_sent_at=_datetime(row["reminder_sent_at"]),
            reminders_paused=bool(row["reminders_paused"]),
            requires_review=bool(row["requires_review"]),
            notes=row["notes"],
            recorded_by=row["recorded_by"],
        )


@dataclass(frozen=True)
class CatchupLineItem:
    description: str
    amount: float
    period_start: date
    period_end: date


@dataclass(frozen=True)
class CatchupCalculation:
    line_items: list[CatchupLineItem]
    total_amount: float
    summary: str


@dataclass(frozen=True)
class SettlementResult:
    payment_id: int
    membership_id: int
    outcome: SettlementOutcome
    new_paid_months: int
    new_status: MembershipStatus
    became_eligible: bool = False
    # True when an earlier settlement of the same event/payment was returned as-is
    duplicate: bool = False

    @classmethod
    def from_row(cls, row) -> "SettlementResult":
        return cls(
            payment_id=row["payment_id"],
            membership_id=row["membership_id"],
            outcome=SettlementOutcome(row["outcome"]),
            new_paid_months=int(row["new_paid_months"]),
            new_status=MembershipStatus(row["new_status"]),
            became_eligible=bool(row["became_eligible"]),
            duplicate=True,
        )
