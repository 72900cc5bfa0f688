import pytest

import billing_config
import store
from errors import ValidationError


def test_defaults():
    config = billing_config.resolve_billing_config(None)
    assert config.reminder_schedule == (3, 7, 14)
    assert config.max_reminders == 3
    assert config.eligibility_months == 60
    assert config.lapse_days == 7
    assert config.cancel_months == 24
    assert config.send_invoice_reminders is True


def test_overrides_merge_over_defaults_and_unknown_keys_are_ignored():
    config = billing_config.resolve_billing_config(
        {"reminder_schedule": [1, 5], "eligibility_months": 12, "favourite_colour": "green"}
    )
    assert config.reminder_schedule == (1, 5)
    assert config.eligibility_months == 12
    assert config.max_reminders == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"reminder_schedule": [7, 3]},
        {"reminder_schedule": [-1, 3]},
        {"reminder_schedule": "3,7"},
        {"max_reminders": -1},
        {"eligibility_months": 0},
        {"cancel_months": 0},
        {"lapse_days": "7"},
        {"send_invoice_reminders": "yes"},
    ],
)
def test_invalid_values_raise(overrides):
    with pytest.raises(ValidationError):
        billing_config.resolve_billing_config(overrides)


def test_reminder_threshold_past_schedule_end():
    config = billing_config.resolve_billing_config({"reminder_schedule": [3], "max_reminders": 3})
    assert config.reminder_threshold(0) == 3
    assert config.reminder_threshold(1) is None


def test_broken_stored_config_falls_back_to_defaults(make_org):
    organization = make_org(overrides={"reminder_schedule": [14, 7]})
    assert billing_config.load_billing_config(organization.id) == billing_config.DEFAULT_BILLING_CONFIG


def test_update_validates_before_saving(org):
    with pytest.raises(ValidationError):
        billing_config.update_billing_config(org.id, {"lapse_days": -3})
    assert store.get_organization(org.id).billing_overrides == {}

    config = billing_config.update_billing_config(org.id, {"lapse_days": 10, "reminder_schedule": (2, 4)})
    assert config.lapse_days == 10
    assert store.get_organization(org.id).billing_overrides == {"lapse_days": 10, "reminder_schedule": [2, 4]}
    assert billing_config.load_billing_config(org.id).reminder_schedule == (2, 4)
