"""Backend settings loaded from ARM_* environment variables."""

from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache
from typing import Literal, TypeVar

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
ALLOWED_LOG_FORMATS = frozenset({"console", "json"})
DEFAULT_WORKSPACE_KEY_PREFIX = "env:"
INFINITE_LEASE = -1

T = TypeVar("T")


def settings_config(*, env_file: str | None = ".env") -> SettingsConfigDict:
    """Return the standard ``BaseSettings`` config dict."""

    return SettingsConfigDict(
        env_file=env_file,
        env_file_encoding="utf-8",
        env_prefix="ARM_",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        str_strip_whitespace=True,
    )


def create_settings_accessors(
    settings_type: type[T],
) -> tuple[Callable[[], T], Callable[[], T]]:
    """Create ``get_settings`` and ``reload_settings`` helpers for a settings class."""

    @lru_cache(maxsize=1)
    def _build() -> T:
        return settings_type()

    def get_settings() -> T:
        return _build()

    def reload_settings() -> T:
        _build.cache_clear()
        return _build()

    return get_settings, reload_settings


def normalize_log_format(value: str, *, env_var: str = "ARM_LOG_FORMAT") -> str:
    normalized = value.strip().lower()
    if normalized not in ALLOWED_LOG_FORMATS:
        allowed = ", ".join(sorted(ALLOWED_LOG_FORMATS))
        raise ValueError(f"{env_var} must be one of: {allowed}.")
    return normalized


def normalize_log_level(value: str, *, env_var: str = "ARM_LOG_LEVEL") -> str:
    normalized = value.strip().upper()
    if normalized not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ValueError(f"{env_var} must be one of: {allowed}.")
    return normalized


class BackendSettings(BaseSettings):
    """Everything needed to reach one container and manage its state objects."""

    model_config = settings_config()

    storage_account_name: str = Field(..., min_length=1)
    container_name: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)
    workspace_key_prefix: str = Field(default=DEFAULT_WORKSPACE_KEY_PREFIX, min_length=1)
    snapshot: bool = False

    endpoint: str | None = None
    environment: Literal["public", "china", "usgovernment"] = "public"

    # Credential material. Exactly one scheme must be configured; that rule is
    # enforced by ``azstate.credentials.resolve`` rather than here.
    access_key: str | None = None
    sas_token: str | None = None
    use_oidc: bool = False
    oidc_token: str | None = None
    oidc_token_file_path: str | None = None
    use_msi: bool = False
    tenant_id: str | None = None
    client_id: str | None = None
    subscription_id: str | None = None
    client_secret: str | None = None
    client_certificate_path: str | None = None
    client_certificate_password: str | None = None

    request_timeout_seconds: float = Field(default=30.0, gt=0)
    lease_duration_seconds: int = Field(default=60)

    log_level: str = "INFO"
    log_format: str = "console"

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: object) -> object:
        if value is None:
            return "public"
        return str(value).strip().lower()

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        return normalize_log_level(str(value))

    @field_validator("log_format", mode="before")
    @classmethod
    def _normalize_log_format(cls, value: object) -> object:
        return normalize_log_format(str(value))

    @field_validator("lease_duration_seconds")
    @classmethod
    def _validate_lease_duration(cls, value: int) -> int:
        if value != INFINITE_LEASE and not 15 <= value <= 60:
            raise ValueError("ARM_LEASE_DURATION_SECONDS must be between 15 and 60, or -1.")
        return value

    @model_validator(mode="after")
    def _finalize(self) -> BackendSettings:
        if self.workspace_key_prefix.startswith("/") or self.workspace_key_prefix.endswith("/"):
            raise ValueError("ARM_WORKSPACE_KEY_PREFIX must not start or end with '/'.")
        if self.key.startswith(f"{self.workspace_key_prefix}/"):
            raise ValueError(
                f"ARM_KEY must not start with the workspace prefix {self.workspace_key_prefix!r}."
            )
        if self.endpoint:
            self.endpoint = self.endpoint.rstrip("/")
        return self


get_settings, reload_settings = create_settings_accessors(BackendSettings)


__all__ = [
    "ALLOWED_LOG_FORMATS",
    "ALLOWED_LOG_LEVELS",
    "DEFAULT_WORKSPACE_KEY_PREFIX",
    "INFINITE_LEASE",
    "BackendSettings",
    "create_settings_accessors",
    "get_settings",
    "normalize_log_format",
    "normalize_log_level",
    "reload_settings",
    "settings_config",
]
