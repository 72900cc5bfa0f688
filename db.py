"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, etc.)
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

import config
from errors import PersistenceError

DB_FILE = config.DB_FILE


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_FILE, timeout=config.STORE_TIMEOUT, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_conn():
    try:
        conn = _connect()
    except sqlite3.Error as e:
        raise PersistenceError(f"cannot open store: {e}") from e
    try:
        yield conn
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(str(e)) from e
    finally:
        conn.close()


@contextmanager
def transaction():
    """
    Connection holding the write lock for its whole lifetime (BEGIN IMMEDIATE),
    so reads made inside it cannot go stale before the writes that follow.
    Commits on success, rolls back on any exception.
    """
    try:
        conn = _connect()
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise PersistenceError(f"cannot open store transaction: {e}") from e
    try:
        yield conn
        conn.execute("COMMIT")
    except sqlite3.IntegrityError:
        conn.execute("ROLLBACK")
        raise
    except sqlite3.Error as e:
        conn.execute("ROLLBACK")
        raise PersistenceError(str(e)) from e
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def execute(sql: str, params: tuple = (), conn: sqlite3.Connection | None = None) -> int:
    if conn is not None:
        return _run(conn, sql, params).lastrowid
    with get_conn() as conn:
        return conn.execute(sql, params).lastrowid


def execute_rowcount(sql: str, params: tuple = (), conn: sqlite3.Connection | None = None) -> int:
    """Run a guarded write and report how many rows it touched."""
    if conn is not None:
        return _run(conn, sql, params).rowcount
    with get_conn() as conn:
        return conn.execute(sql, params).rowcount


def fetch_one(sql: str, params: tuple = (), conn: sqlite3.Connection | None = None):
    if conn is not None:
        return _run(conn, sql, params).fetchone()
    with get_conn() as conn:
        return conn.execute(sql, params).fetchone()


def fetch_all(sql: str, params: tuple = (), conn: sqlite3.Connection | None = None) -> list[sqlite3.Row]:
    if conn is not None:
        return _run(conn, sql, params).fetchall()
    with get_conn() as conn:
        return conn.execute(sql, params).fetchall()


def _run(conn: sqlite3.Connection, sql: str, params: tuple) -> sqlite3.Cursor:
    # IntegrityError is left alone: callers turn it into a domain conflict
    try:
        return conn.execute(sql, params)
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as e:
        raise PersistenceError(str(e)) from e


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        timezone TEXT NOT NULL,
        billing_config TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memberships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        member_name TEXT NOT NULL,
        member_email TEXT,
        status TEXT NOT NULL CHECK(status IN
            ('pending','awaiting_signature','waiting_period','active','lapsed','cancelled')),
        billing_frequency TEXT NOT NULL CHECK(billing_frequency IN ('monthly','biannual','annual')),
        dues_amount REAL NOT NULL DEFAULT 0,
        paid_months INTEGER NOT NULL DEFAULT 0 CHECK(paid_months >= 0),
        billing_anchor_date TEXT,
        billing_anniversary_day INTEGER,
        next_payment_due TEXT,
        enrollment_fee_status TEXT NOT NULL DEFAULT 'unpaid'
            CHECK(enrollment_fee_status IN ('unpaid','paid','waived')),
        subscription_status TEXT NOT NULL DEFAULT 'ok',
        agreement_signed_at TEXT,
        join_date TEXT,
        last_payment_date TEXT,
        eligible_date TEXT,
        cancelled_date TEXT,
        updated_at TEXT,
        FOREIGN KEY(organization_id) REFERENCES organizations(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        membership_id INTEGER NOT NULL,
        type TEXT NOT NULL CHECK(type IN ('enrollment_fee','dues','back_dues')),
        method TEXT CHECK(method IS NULL OR method IN ('gateway','cash','check','other')),
        status TEXT NOT NULL CHECK(status IN ('pending','processing','completed','failed','refunded')),
        amount REAL NOT NULL,
        months_credited INTEGER NOT NULL DEFAULT 0,
        due_date TEXT,
        period_start TEXT,
        period_end TEXT,
        period_label TEXT,
        invoice_number TEXT,
        gateway_reference TEXT UNIQUE,
        amount_paid REAL,
        paid_at TEXT,
        refunded_at TEXT,
        reminder_count INTEGER NOT NULL DEFAULT 0,
        reminder_sent_at TEXT,
        reminders_paused INTEGER NOT NULL DEFAULT 0,
        requires_review INTEGER NOT NULL DEFAULT 0,
        notes TEXT,
        recorded_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        FOREIGN KEY(membership_id) REFERENCES memberships(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_membership ON payments(membership_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_payments_org_due ON payments(organization_id, status, due_date)",
    # one live dues invoice per membership and due date; failed/refunded ones free the slot
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_payments_dues_period ON payments(membership_id, due_date)
    WHERE type = 'dues' AND status IN ('pending', 'processing', 'completed')
    """,
    """
    CREATE TABLE IF NOT EXISTS settlement_events (
        event_key TEXT PRIMARY KEY,
        payment_id INTEGER NOT NULL,
        membership_id INTEGER NOT NULL,
        outcome TEXT NOT NULL,
        new_paid_months INTEGER NOT NULL,
        new_status TEXT NOT NULL,
        became_eligible INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoice_sequences (
        organization_id INTEGER NOT NULL,
        year_month TEXT NOT NULL,
        last_value INTEGER NOT NULL,
        PRIMARY KEY (organization_id, year_month)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS paid_months_adjustments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        membership_id INTEGER NOT NULL,
        old_value INTEGER NOT NULL,
        new_value INTEGER NOT NULL,
        actor TEXT NOT NULL,
        reason TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    # Small settings table (used to force password change on first login)
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
]


def _create_tables() -> None:
    with get_conn() as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def _get_setting(key: str, default: str | None = None) -> str | None:
    row = fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,))
    if row:
        return str(row["value"])
    return default


def _set_setting(key: str, value: str) -> None:
    execute(
        """
        INSERT INTO app_settings(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def init_db(default_admin_hash: str | None = None) -> None:
    """
    Initialize the database.
    - Create tables
    - Insert default admin if a hash is given and no admin exists
    - Force password change on first login
    """
    _create_tables()
    if default_admin_hash is None:
        return

    admin = fetch_one("SELECT id FROM admin_users LIMIT 1")
    if not admin:
        execute(
            "INSERT INTO admin_users(username, password_hash, created_at) VALUES(?,?,?)",
            ("admin", default_admin_hash, utcnow_iso()),
        )
        _set_setting("force_password_change", "1")
    elif _get_setting("force_password_change") is None:
        _set_setting("force_password_change", "0")


def is_force_password_change() -> bool:
    return _get_setting("force_password_change") == "1"


def clear_force_password_change() -> None:
    _set_setting("force_password_change", "0")
