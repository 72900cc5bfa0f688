# tests/conftest.py
from datetime import date, datetime, timezone

import pytest

import db
import store
from errors import DeliveryError
from models import (
    BillingFrequency,
    EnrollmentFeeStatus,
    MembershipStatus,
    PaymentStatus,
    PaymentType,
)


@pytest.fixture(autouse=True)
def test_db(tmp_path, monkeypatch):
    """Every test gets its own SQLite file with a fresh schema."""
    monkeypatch.setattr(db, "DB_FILE", tmp_path / "test_dues.db")
    db.init_db()
    yield tmp_path / "test_dues.db"


@pytest.fixture
def make_org():
    def _make(name="Amanah Logic", timezone_name="America/Los_Angeles", overrides=None):
        return store.get_organization(store.insert_organization(name, timezone_name, overrides))

    return _make


@pytest.fixture
def org(make_org):
    return make_org()


@pytest.fixture
def make_membership(org):
    def _make(organization=None, **fields):
        organization = organization or org
        values = {
            "organization_id": organization.id,
            "member_name": "Yusuf Khan",
            "member_email": "yusuf@example.com",
            "status": MembershipStatus.ACTIVE,
            "billing_frequency": BillingFrequency.MONTHLY,
            "dues_amount": 40.0,
            "paid_months": 0,
            "enrollment_fee_status": EnrollmentFeeStatus.PAID,
            "agreement_signed_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        values.update(fields)
        return store.get_membership(store.insert_membership(**values))

    return _make


@pytest.fixture
def make_payment():
    def _make(membership, **fields):
        values = {
            "organization_id": membership.organization_id,
            "membership_id": membership.id,
            "type": PaymentType.DUES,
            "status": PaymentStatus.PENDING,
            "amount": membership.dues_amount,
            "months_credited": 1,
            "due_date": date(2025, 3, 1),
        }
        values.update(fields)
        return store.get_payment(store.insert_payment(values))

    return _make


class RecordingNotifier:
    """Notification delegate that remembers every send; recipients in `fail_for` raise."""

    def __init__(self, fail_for=(), crash_for=()):
        self.sent = []
        self.attempts = []
        self.fail_for = set(fail_for)
        self.crash_for = set(crash_for)

    def send(self, template, recipient, variables):
        self.attempts.append((template, recipient, variables))
        if recipient in self.fail_for:
            raise DeliveryError(f"mailbox unavailable for {recipient}")
        if recipient in self.crash_for:
            raise RuntimeError("provider timeout")
        self.sent.append((template, recipient, variables))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_notifier():
    return RecordingNotifier
