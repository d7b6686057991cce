from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest

from azstate import locks
from azstate.backend import Backend
from azstate.settings import BackendSettings
from tests.fakes import FakeContainer, FakeLease

ACCESS_KEY = "QUNDRVNTX0tFWQ0K"


@pytest.fixture(autouse=True)
def _clean_arm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ARM_ACCESS_KEY",
        "ARM_SAS_TOKEN",
        "ARM_USE_OIDC",
        "ARM_OIDC_TOKEN",
        "ARM_OIDC_TOKEN_FILE_PATH",
        "ARM_USE_MSI",
        "ARM_TENANT_ID",
        "ARM_CLIENT_ID",
        "ARM_SUBSCRIPTION_ID",
        "ARM_CLIENT_SECRET",
        "ARM_CLIENT_CERTIFICATE_PATH",
        "ARM_CLIENT_CERTIFICATE_PASSWORD",
        "ARM_ENVIRONMENT",
        "ARM_ENDPOINT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _fake_lease_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(locks, "BlobLeaseClient", FakeLease)


@pytest.fixture
def make_settings() -> Callable[..., BackendSettings]:
    def _make(**overrides: Any) -> BackendSettings:
        values: dict[str, Any] = {
            "storage_account_name": "tfaccount",
            "container_name": "tfcontainer",
            "key": "terraform.tfstate",
            "access_key": ACCESS_KEY,
        }
        values.update(overrides)
        return BackendSettings(_env_file=None, **values)

    return _make


@pytest.fixture
def container() -> FakeContainer:
    return FakeContainer()


@pytest.fixture
def make_backend(
    make_settings: Callable[..., BackendSettings],
    container: FakeContainer,
) -> Iterator[Callable[..., Backend]]:
    created: list[Backend] = []

    def _make(**overrides: Any) -> Backend:
        backend = Backend(make_settings(**overrides), container=container)  # type: ignore[arg-type]
        created.append(backend)
        return backend

    yield _make

    for backend in created:
        backend.close()
