from __future__ import annotations

import pytest
from pydantic import ValidationError

from azstate.settings import BackendSettings


def _set_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARM_STORAGE_ACCOUNT_NAME", "tfaccount")
    monkeypatch.setenv("ARM_CONTAINER_NAME", "tfcontainer")
    monkeypatch.setenv("ARM_KEY", "state")


def test_settings_read_arm_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("ARM_ACCESS_KEY", "QUNDRVNTX0tFWQ0K")
    monkeypatch.setenv("ARM_SNAPSHOT", "false")

    settings = BackendSettings(_env_file=None)

    assert settings.container_name == "tfcontainer"
    assert settings.key == "state"
    assert settings.snapshot is False
    assert settings.access_key == "QUNDRVNTX0tFWQ0K"
    assert settings.workspace_key_prefix == "env:"
    assert settings.environment == "public"
    assert settings.lease_duration_seconds == 60


def test_settings_normalize_environment_and_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("ARM_ENVIRONMENT", "USGovernment")
    monkeypatch.setenv("ARM_LOG_LEVEL", "debug")
    monkeypatch.setenv("ARM_LOG_FORMAT", "JSON")

    settings = BackendSettings(_env_file=None)

    assert settings.environment == "usgovernment"
    assert settings.log_level == "DEBUG"
    assert settings.log_format == "json"


def test_settings_strip_trailing_slash_from_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("ARM_ENDPOINT", "http://127.0.0.1:10000/devstoreaccount1/")

    settings = BackendSettings(_env_file=None)

    assert settings.endpoint == "http://127.0.0.1:10000/devstoreaccount1"


@pytest.mark.parametrize("value", [-1, 15, 60])
def test_lease_duration_accepts_service_limits(monkeypatch: pytest.MonkeyPatch, value: int) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("ARM_LEASE_DURATION_SECONDS", str(value))

    assert BackendSettings(_env_file=None).lease_duration_seconds == value


@pytest.mark.parametrize("value", [0, 14, 61, -2])
def test_lease_duration_rejects_out_of_range(monkeypatch: pytest.MonkeyPatch, value: int) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("ARM_LEASE_DURATION_SECONDS", str(value))

    with pytest.raises(ValidationError):
        BackendSettings(_env_file=None)


@pytest.mark.parametrize(
    ("env_name", "value"),
    [
        ("ARM_LOG_LEVEL", "verbose"),
        ("ARM_LOG_FORMAT", "xml"),
        ("ARM_ENVIRONMENT", "mars"),
        ("ARM_KEY", "env:/foo/state"),
        ("ARM_WORKSPACE_KEY_PREFIX", "env:/"),
    ],
)
def test_invalid_settings_raise_validation_error(
    monkeypatch: pytest.MonkeyPatch,
    env_name: str,
    value: str,
) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv(env_name, value)

    with pytest.raises(ValidationError):
        BackendSettings(_env_file=None)


def test_missing_container_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARM_STORAGE_ACCOUNT_NAME", "tfaccount")
    monkeypatch.setenv("ARM_KEY", "state")
    monkeypatch.delenv("ARM_CONTAINER_NAME", raising=False)

    with pytest.raises(ValidationError):
        BackendSettings(_env_file=None)
