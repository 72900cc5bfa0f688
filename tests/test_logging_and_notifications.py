import logging

import pytest

from errors import DeliveryError
from logging_config import RunIdFilter, run_context, run_id_ctx
from notifications import PAYMENT_REMINDER, LoggingNotifier


def _record():
    return logging.LogRecord("dues.test", logging.INFO, __file__, 1, "event", None, None)


def test_run_id_is_stamped_inside_run_context():
    record = _record()
    with run_context("billing-1-abc"):
        RunIdFilter().filter(record)
    assert record.run_id == "billing-1-abc"
    assert run_id_ctx.get() == "-"


def test_run_id_defaults_outside_a_run():
    record = _record()
    RunIdFilter().filter(record)
    assert record.run_id == "-"


def test_logging_notifier_needs_a_recipient(caplog):
    notifier = LoggingNotifier()
    with pytest.raises(DeliveryError):
        notifier.send(PAYMENT_REMINDER, None, {"amount": "40.00"})

    with caplog.at_level(logging.INFO, logger="dues.notifications"):
        notifier.send(PAYMENT_REMINDER, "member@example.com", {"amount": "40.00"})
    assert any(r.getMessage() == "notification_queued" for r in caplog.records)
