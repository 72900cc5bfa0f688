"""
billing_config.py
Per-organization billing configuration: defaults merged with stored overrides.

Used by the settlement engine (eligibility threshold), the reminder scheduler
(schedule, max reminders, on/off switch) and the billing run (lapse/cancel windows).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, fields

import store
from errors import ValidationError
from models import BillingConfig, Organization

logger = logging.getLogger("dues.billing_config")

DEFAULT_BILLING_CONFIG = BillingConfig()

_KEYS = {f.name for f in fields(BillingConfig)}


def _as_int(key: str, value, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}, got {value}")
    return value


def resolve_billing_config(overrides: dict | None = None) -> BillingConfig:
    """
    Merge `overrides` over the defaults and validate the result.

    Pure: no store access. Unknown keys are ignored (and logged); invalid values
    raise ValidationError.
    """
    overrides = dict(overrides or {})
    unknown = sorted(set(overrides) - _KEYS)
    if unknown:
        logger.warning("billing_config_unknown_keys", extra={"keys": unknown})

    merged = asdict(DEFAULT_BILLING_CONFIG)
    merged.update({k: v for k, v in overrides.items() if k in _KEYS})

    schedule = merged["reminder_schedule"]
    if isinstance(schedule, (str, bytes)) or not hasattr(schedule, "__iter__"):
        raise ValidationError(f"reminder_schedule must be a list of days, got {schedule!r}")
    schedule = tuple(_as_int("reminder_schedule", day, 0) for day in schedule)
    if list(schedule) != sorted(schedule):
        raise ValidationError(f"reminder_schedule must be ascending, got {list(schedule)}")

    send = merged["send_invoice_reminders"]
    if not isinstance(send, bool):
        raise ValidationError(f"send_invoice_reminders must be true/false, got {send!r}")

    return BillingConfig(
        reminder_schedule=schedule,
        max_reminders=_as_int("max_reminders", merged["max_reminders"], 0),
        eligibility_months=_as_int("eligibility_months", merged["eligibility_months"], 1),
        lapse_days=_as_int("lapse_days", merged["lapse_days"], 0),
        cancel_months=_as_int("cancel_months", merged["cancel_months"], 1),
        send_invoice_reminders=send,
    )


def config_for_organization(organization: Organization) -> BillingConfig:
    """Billing config for a loaded organization; broken stored overrides fall back to defaults."""
    try:
        return resolve_billing_config(organization.billing_overrides)
    except ValidationError:
        logger.exception("billing_config_invalid_using_defaults", extra={"organization_id": organization.id})
        return DEFAULT_BILLING_CONFIG


def load_billing_config(organization_id: int) -> BillingConfig:
    return config_for_organization(store.get_organization(organization_id))


def update_billing_config(organization_id: int, overrides: dict) -> BillingConfig:
    organization = store.get_organization(organization_id)
    merged = {**organization.billing_overrides, **overrides}
    config = resolve_billing_config(merged)
    stored = {k: v for k, v in merged.items() if k in _KEYS}
    if "reminder_schedule" in stored:
        stored["reminder_schedule"] = list(config.reminder_schedule)
    store.save_billing_overrides(organization_id, stored)
    logger.info("billing_config_updated", extra={"organization_id": organization_id, "overrides": stored})
    return config
