"""
store.py
Reads and writes of organizations, memberships and payments.

Everything leaving this module is a typed model (see models.py); rows, JSON and
ISO strings do not leak into business logic. Writes are partial updates of named
columns, and the writes that must not race are guarded (conditional UPDATE or a
keyed INSERT).
"""

from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime
from enum import Enum

import db
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    OPEN_PAYMENT_STATUSES,
    REMINDABLE_STATUSES,
    Membership,
    MembershipStatus,
    Organization,
    Payment,
    SettlementResult,
)

MEMBERSHIP_COLUMNS = frozenset({
    "organization_id", "member_name", "member_email", "status", "billing_frequency", "dues_amount",
    "paid_months", "billing_anchor_date", "billing_anniversary_day", "next_payment_due",
    "enrollment_fee_status", "subscription_status", "agreement_signed_at", "join_date",
    "last_payment_date", "eligible_date", "cancelled_date",
})

PAYMENT_COLUMNS = frozenset({
    "organization_id", "membership_id", "type", "method", "status", "amount", "months_credited",
    "due_date", "period_start", "period_end", "period_label", "invoice_number", "gateway_reference",
    "amount_paid", "paid_at", "refunded_at", "reminder_count", "reminder_sent_at", "reminders_paused",
    "requires_review", "notes", "recorded_by",
})


def _sql(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, dict):
        return json.dumps(value)
    return value


def _check_columns(fields: dict, allowed: frozenset) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Unknown columns: {sorted(unknown)}")


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


# ---------- Organizations ----------

def insert_organization(name: str, timezone: str, billing_overrides: dict | None = None) -> int:
    return db.execute(
        "INSERT INTO organizations(name, timezone, billing_config, created_at) VALUES(?,?,?,?)",
        (name, timezone, json.dumps(billing_overrides or {}), db.utcnow_iso()),
    )


def get_organization(organization_id: int, conn=None) -> Organization:
    row = db.fetch_one("SELECT * FROM organizations WHERE id = ?", (organization_id,), conn=conn)
    if not row:
        raise NotFoundError(f"Organization {organization_id} not found")
    return Organization.from_row(row)


def list_organizations() -> list[Organization]:
    return [Organization.from_row(r) for r in db.fetch_all("SELECT * FROM organizations ORDER BY id")]


def save_billing_overrides(organization_id: int, overrides: dict) -> None:
    changed = db.execute_rowcount(
        "UPDATE organizations SET billing_config = ? WHERE id = ?",
        (json.dumps(overrides), organization_id),
    )
    if not changed:
        raise NotFoundError(f"Organization {organization_id} not found")


# ---------- Memberships ----------

def insert_membership(**fields) -> int:
    _check_columns(fields, MEMBERSHIP_COLUMNS)
    cols = list(fields)
    return db.execute(
        f"INSERT INTO memberships({','.join(cols)}, updated_at) VALUES({_placeholders(cols)}, ?)",
        tuple(_sql(fields[c]) for c in cols) + (db.utcnow_iso(),),
    )


def get_membership(membership_id: int, conn=None) -> Membership:
    row = db.fetch_one("SELECT * FROM memberships WHERE id = ?", (membership_id,), conn=conn)
    if not row:
        raise NotFoundError(f"Membership {membership_id} not found")
    return Membership.from_row(row)


def find_membership(membership_id: int, conn=None) -> Membership | None:
    row = db.fetch_one("SELECT * FROM memberships WHERE id = ?", (membership_id,), conn=conn)
    return Membership.from_row(row) if row else None


def update_membership(membership_id: int, fields: dict, conn=None) -> None:
    _check_columns(fields, MEMBERSHIP_COLUMNS)
    if not fields:
        return
    assignments = ", ".join(f"{c} = ?" for c in fields)
    db.execute(
        f"UPDATE memberships SET {assignments}, updated_at = ? WHERE id = ?",
        tuple(_sql(v) for v in fields.values()) + (db.utcnow_iso(), membership_id),
        conn=conn,
    )


def update_membership_status(membership_id: int, expected: MembershipStatus, fields: dict, conn=None) -> bool:
    """Guarded status change: only applies while the row still has the `expected` status."""
    _check_columns(fields, MEMBERSHIP_COLUMNS)
    assignments = ", ".join(f"{c} = ?" for c in fields)
    return bool(db.execute_rowcount(
        f"UPDATE memberships SET {assignments}, updated_at = ? WHERE id = ? AND status = ?",
        tuple(_sql(v) for v in fields.values()) + (db.utcnow_iso(), membership_id, expected.value),
        conn=conn,
    ))


def list_memberships(organization_id: int, statuses=None) -> list[Membership]:
    sql = "SELECT * FROM memberships WHERE organization_id = ?"
    params: list = [organization_id]
    if statuses:
        sql += f" AND status IN ({_placeholders(statuses)})"
        params.extend(_sql(s) for s in statuses)
    return [Membership.from_row(r) for r in db.fetch_all(sql + " ORDER BY id", tuple(params))]


def list_memberships_due_for_billing(organization_id: int, statuses, today: date) -> list[Membership]:
    rows = db.fetch_all(
        f"""
        SELECT * FROM memberships
        WHERE organization_id = ?
          AND status IN ({_placeholders(statuses)})
          AND enrollment_fee_status IN ('paid', 'waived')
          AND agreement_signed_at IS NOT NULL
          AND next_payment_due IS NOT NULL
          AND next_payment_due <= ?
        ORDER BY id
        """,
        (organization_id, *[_sql(s) for s in statuses], today.isoformat()),
    )
    return [Membership.from_row(r) for r in rows]


def list_memberships_due_before(organization_id: int, statuses, cutoff: date) -> list[Membership]:
    rows = db.fetch_all(
        f"""
        SELECT * FROM memberships
        WHERE organization_id = ?
          AND status IN ({_placeholders(statuses)})
          AND next_payment_due IS NOT NULL
          AND next_payment_due <= ?
        ORDER BY id
        """,
        (organization_id, *[_sql(s) for s in statuses], cutoff.isoformat()),
    )
    return [Membership.from_row(r) for r in rows]


def record_paid_months_adjustment(membership_id: int, old: int, new: int, actor: str, reason: str, conn=None) -> int:
    return db.execute(
        """
        INSERT INTO paid_months_adjustments(membership_id, old_value, new_value, actor, reason, created_at)
        VALUES(?,?,?,?,?,?)
        """,
        (membership_id, old, new, actor, reason, db.utcnow_iso()),
        conn=conn,
    )


def list_paid_months_adjustments(membership_id: int) -> list[sqlite3.Row]:
    return db.fetch_all(
        "SELECT * FROM paid_months_adjustments WHERE membership_id = ? ORDER BY id",
        (membership_id,),
    )


# ---------- Payments ----------

def insert_payment(fields: dict, conn=None) -> int:
    _check_columns(fields, PAYMENT_COLUMNS)
    cols = list(fields)
    try:
        return db.execute(
            f"INSERT INTO payments({','.join(cols)}, created_at) VALUES({_placeholders(cols)}, ?)",
            tuple(_sql(fields[c]) for c in cols) + (db.utcnow_iso(),),
            conn=conn,
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(f"Payment insert rejected: {e}") from e


def get_payment(payment_id: int, conn=None) -> Payment:
    row = db.fetch_one("SELECT * FROM payments WHERE id = ?", (payment_id,), conn=conn)
    if not row:
        raise NotFoundError(f"Payment {payment_id} not found")
    return Payment.from_row(row)


def find_payment(payment_id: int, conn=None) -> Payment | None:
    row = db.fetch_one("SELECT * FROM payments WHERE id = ?", (payment_id,), conn=conn)
    return Payment.from_row(row) if row else None


def find_payment_by_reference(reference: str, conn=None) -> Payment | None:
    row = db.fetch_one("SELECT * FROM payments WHERE gateway_reference = ?", (reference,), conn=conn)
    return Payment.from_row(row) if row else None


def find_open_payment_for_membership(membership_id: int, conn=None) -> Payment | None:
    """Most recent pending/processing payment not yet linked to a gateway reference."""
    row = db.fetch_one(
        """
        SELECT * FROM payments
        WHERE membership_id = ? AND status IN ('pending', 'processing') AND gateway_reference IS NULL
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (membership_id,),
        conn=conn,
    )
    return Payment.from_row(row) if row else None


def update_payment(payment_id: int, fields: dict, conn=None) -> None:
    _check_columns(fields, PAYMENT_COLUMNS)
    if not fields:
        return
    assignments = ", ".join(f"{c} = ?" for c in fields)
    try:
        db.execute(
            f"UPDATE payments SET {assignments}, updated_at = ? WHERE id = ?",
            tuple(_sql(v) for v in fields.values()) + (db.utcnow_iso(), payment_id),
            conn=conn,
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(f"Payment update rejected: {e}") from e


def transition_payment(payment_id: int, from_statuses, fields: dict, conn=None) -> bool:
    """
    Compare-and-swap on payment status: applies `fields` only while the payment is
    still in one of `from_statuses`. Returns False when another writer got there first.
    """
    _check_columns(fields, PAYMENT_COLUMNS)
    assignments = ", ".join(f"{c} = ?" for c in fields)
    try:
        changed = db.execute_rowcount(
            f"""
            UPDATE payments SET {assignments}, updated_at = ?
            WHERE id = ? AND status IN ({_placeholders(from_statuses)})
            """,
            tuple(_sql(v) for v in fields.values())
            + (db.utcnow_iso(), payment_id)
            + tuple(_sql(s) for s in from_statuses),
            conn=conn,
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(f"Payment update rejected: {e}") from e
    return bool(changed)


def list_payments(membership_id: int) -> list[Payment]:
    rows = db.fetch_all(
        "SELECT * FROM payments WHERE membership_id = ? ORDER BY COALESCE(due_date, created_at), id",
        (membership_id,),
    )
    return [Payment.from_row(r) for r in rows]


def find_dues_payment(membership_id: int, due_date: date, conn=None) -> Payment | None:
    """The live (pending/processing/completed) dues invoice for a due date, if any."""
    row = db.fetch_one(
        """
        SELECT * FROM payments
        WHERE membership_id = ? AND type = 'dues' AND due_date = ? AND status IN ('pending', 'processing', 'completed')
        LIMIT 1
        """,
        (membership_id, due_date.isoformat()),
        conn=conn,
    )
    return Payment.from_row(row) if row else None


def dues_payment_exists(membership_id: int, due_date: date, conn=None) -> bool:
    return find_dues_payment(membership_id, due_date, conn=conn) is not None


def back_dues_period_starts(membership_id: int) -> set[date]:
    rows = db.fetch_all(
        """
        SELECT period_start FROM payments
        WHERE membership_id = ? AND type = 'back_dues' AND period_start IS NOT NULL AND status != 'refunded'
        """,
        (membership_id,),
    )
    return {date.fromisoformat(r["period_start"]) for r in rows}


def list_unpaid_obligations(membership_id: int, today: date) -> list[Payment]:
    """Back dues of any date plus dues already past due that are not completed."""
    rows = db.fetch_all(
        f"""
        SELECT * FROM payments
        WHERE membership_id = ?
          AND status IN ({_placeholders(OPEN_PAYMENT_STATUSES)})
          AND (type = 'back_dues' OR (type = 'dues' AND due_date IS NOT NULL AND due_date < ?))
        ORDER BY due_date, id
        """,
        (membership_id, *[s.value for s in OPEN_PAYMENT_STATUSES], today.isoformat()),
    )
    return [Payment.from_row(r) for r in rows]


def list_reminder_candidates(organization_id: int, today: date, max_reminders: int) -> list[Payment]:
    rows = db.fetch_all(
        f"""
        SELECT * FROM payments
        WHERE organization_id = ?
          AND status IN ({_placeholders(REMINDABLE_STATUSES)})
          AND COALESCE(reminders_paused, 0) = 0
          AND COALESCE(requires_review, 0) = 0
          AND due_date IS NOT NULL
          AND due_date <= ?
          AND COALESCE(reminder_count, 0) < ?
        ORDER BY due_date, id
        """,
        (organization_id, *[s.value for s in REMINDABLE_STATUSES], today.isoformat(), max_reminders),
    )
    return [Payment.from_row(r) for r in rows]


def claim_reminder(payment_id: int, expected_count: int, fields: dict) -> bool:
    """Reminder bookkeeping guarded on the count read by this sweep, so one slot fires once."""
    _check_columns(fields, PAYMENT_COLUMNS)
    assignments = ", ".join(f"{c} = ?" for c in fields)
    return bool(db.execute_rowcount(
        f"""
        UPDATE payments SET {assignments}, updated_at = ?
        WHERE id = ? AND COALESCE(reminder_count, 0) = ?
        """,
        tuple(_sql(v) for v in fields.values()) + (db.utcnow_iso(), payment_id, expected_count),
    ))


def list_review_queue(organization_id: int) -> list[sqlite3.Row]:
    return db.fetch_all(
        """
        SELECT p.id, p.invoice_number, m.member_name, p.type, p.status, p.amount, p.due_date,
               p.reminder_count, p.reminder_sent_at
        FROM payments p
        JOIN memberships m ON m.id = p.membership_id
        WHERE p.organization_id = ? AND p.requires_review = 1 AND p.status IN ('pending', 'failed')
        ORDER BY p.due_date, p.id
        """,
        (organization_id,),
    )


def list_overdue_payments(organization_id: int, today: date) -> list[sqlite3.Row]:
    return db.fetch_all(
        """
        SELECT p.id, p.invoice_number, m.member_name, p.type, p.status, p.amount, p.due_date,
               p.reminder_count, p.reminders_paused, p.requires_review
        FROM payments p
        JOIN memberships m ON m.id = p.membership_id
        WHERE p.organization_id = ? AND p.status IN ('pending', 'failed') AND p.due_date <= ?
        ORDER BY p.due_date, p.id
        """,
        (organization_id, today.isoformat()),
    )


# ---------- Settlement events ----------

def get_settlement(event_key: str, conn=None) -> SettlementResult | None:
    row = db.fetch_one("SELECT * FROM settlement_events WHERE event_key = ?", (event_key,), conn=conn)
    return SettlementResult.from_row(row) if row else None


def record_settlement(event_key: str, result: SettlementResult, conn=None) -> None:
    try:
        db.execute(
            """
            INSERT INTO settlement_events(event_key, payment_id, membership_id, outcome,
                new_paid_months, new_status, became_eligible, created_at)
            VALUES(?,?,?,?,?,?,?,?)
            """,
            (
                event_key,
                result.payment_id,
                result.membership_id,
                result.outcome.value,
                result.new_paid_months,
                result.new_status.value,
                int(result.became_eligible),
                db.utcnow_iso(),
            ),
            conn=conn,
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(f"Settlement {event_key!r} already recorded") from e


def latest_settlement_for_payment(payment_id: int, conn=None) -> SettlementResult | None:
    row = db.fetch_one(
        """
        SELECT * FROM settlement_events
        WHERE payment_id = ? AND outcome = 'succeeded'
        ORDER BY created_at DESC, rowid DESC LIMIT 1
        """,
        (payment_id,),
        conn=conn,
    )
    return SettlementResult.from_row(row) if row else None


# ---------- Invoice numbers ----------

def next_invoice_sequence(organization_id: int, year_month: str, conn=None) -> int:
    if conn is None:
        with db.transaction() as conn:
            return next_invoice_sequence(organization_id, year_month, conn=conn)
    db.execute(
        """
        INSERT INTO invoice_sequences(organization_id, year_month, last_value) VALUES(?, ?, 1)
        ON CONFLICT(organization_id, year_month) DO UPDATE SET last_value = last_value + 1
        """,
        (organization_id, year_month),
        conn=conn,
    )
    row = db.fetch_one(
        "SELECT last_value FROM invoice_sequences WHERE organization_id = ? AND year_month = ?",
        (organization_id, year_month),
        conn=conn,
    )
    return int(row["last_value"])

