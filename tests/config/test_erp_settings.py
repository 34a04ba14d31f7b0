"""Tests for YAML settings loading in erp_config."""

import pytest

from erp_config import ErpSettings, load_settings, parse_settings
from erp_kernel.exceptions import ConfigurationError, ValidationError


def test_defaults_without_file_or_environment():
    settings = load_settings(environ={})

    assert settings == ErpSettings()
    assert settings.database.url == "sqlite://"
    assert settings.automation.lease_seconds == 30
    assert settings.credit.default_hold_threshold_percent == 90
    assert settings.approval.privileged_roles == ("approval_admin",)


def test_yaml_file_overrides_defaults(tmp_path):
    path = tmp_path / "erp.yaml"
    path.write_text(
        "automation:\n"
        "  worker_count: 2\n"
        "  tick_interval_seconds: 5\n"
        "approval:\n"
        "  privileged_roles: [controller, cfo]\n"
        "credit:\n"
        "  default_auto_hold: false\n"
    )

    settings = load_settings(path, environ={})

    assert settings.automation.worker_count == 2
    assert settings.automation.tick_interval_seconds == 5.0
    assert settings.automation.lease_seconds == 30
    assert settings.approval.privileged_roles == ("controller", "cfo")
    assert settings.credit.default_auto_hold is False


def test_empty_file_yields_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_settings(path, environ={}) == ErpSettings()


def test_environment_overrides_file_values():
    settings = parse_settings(
        {"database": {"url": "sqlite:///from-file.db"}, "logging": None},
        environ={"ERP_DATABASE_URL": "postgresql://erp@db/erp", "ERP_LOG_LEVEL": "DEBUG"},
    )

    assert settings.database.url == "postgresql://erp@db/erp"
    assert settings.logging.level == "DEBUG"


@pytest.mark.parametrize(
    "data",
    [
        {"ledger": {"anything": 1}},
        {"automation": {"workers": 3}},
        {"automation": {"worker_count": "four"}},
        {"automation": {"worker_count": True}},
        {"credit": {"default_auto_hold": "yes"}},
        {"approval": {"privileged_roles": "admin"}},
        {"database": ["sqlite://"]},
    ],
)
def test_invalid_settings_are_rejected(data):
    with pytest.raises(ConfigurationError):
        parse_settings(data, environ={})


def test_configuration_error_is_a_validation_error(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- database\n")

    with pytest.raises(ValidationError):
        load_settings(path, environ={})
