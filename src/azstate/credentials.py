"""Credential resolution.

Configuration may name any one of six authentication schemes. ``resolve``
picks the single configured scheme, validates that it is complete, performs
the token round trip for identity-based schemes and returns a frozen
credential handle. The store and lock manager only ever see the container
client built from that handle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from azure.core.credentials import AzureNamedKeyCredential, AzureSasCredential, TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import (
    CertificateCredential,
    ClientAssertionCredential,
    ClientSecretCredential,
    ManagedIdentityCredential,
)
from azure.storage.blob import BlobServiceClient, ContainerClient

from .environments import STORAGE_SCOPE, get_environment
from .errors import AuthenticationError, ConfigurationError
from .logging import log_context
from .settings import BackendSettings

logger = logging.getLogger(__name__)

ACCESS_KEY = "access_key"
SAS_TOKEN = "sas_token"
OIDC = "use_oidc"
MANAGED_IDENTITY = "use_msi"
CLIENT_SECRET = "client_secret"
CLIENT_CERTIFICATE = "client_certificate_path"

# Fixed precedence; also the order used when reporting configuration problems.
SCHEME_ORDER = (ACCESS_KEY, SAS_TOKEN, OIDC, MANAGED_IDENTITY, CLIENT_SECRET, CLIENT_CERTIFICATE)

_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    ACCESS_KEY: ("storage_account_name",),
    SAS_TOKEN: (),
    OIDC: ("tenant_id", "client_id", "subscription_id"),
    MANAGED_IDENTITY: ("tenant_id", "subscription_id"),
    CLIENT_SECRET: ("tenant_id", "client_id", "subscription_id"),
    CLIENT_CERTIFICATE: ("tenant_id", "client_id", "subscription_id", "client_certificate_path"),
}


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SharedKey:
    scheme: ClassVar[str] = ACCESS_KEY

    account_name: str
    account_key: str = field(repr=False)

    def storage_credential(self) -> AzureNamedKeyCredential:
        return AzureNamedKeyCredential(self.account_name, self.account_key)

    def describe(self) -> str:
        return f"shared key for account {self.account_name}"


@dataclass(frozen=True, slots=True)
class SasToken:
    scheme: ClassVar[str] = SAS_TOKEN

    token: str = field(repr=False)

    def storage_credential(self) -> AzureSasCredential:
        return AzureSasCredential(self.token)

    def describe(self) -> str:
        return "SAS token"


@dataclass(frozen=True, slots=True)
class OidcToken:
    scheme: ClassVar[str] = OIDC

    tenant_id: str
    client_id: str
    subscription_id: str
    token_credential: TokenCredential = field(repr=False, compare=False)

    def storage_credential(self) -> TokenCredential:
        return self.token_credential

    def describe(self) -> str:
        return f"OIDC federated token for client {self.client_id} in tenant {self.tenant_id}"


@dataclass(frozen=True, slots=True)
class ManagedIdentity:
    scheme: ClassVar[str] = MANAGED_IDENTITY

    tenant_id: str
    subscription_id: str
    client_id: str | None
    token_credential: TokenCredential = field(repr=False, compare=False)

    def storage_credential(self) -> TokenCredential:
        return self.token_credential

    def describe(self) -> str:
        identity = self.client_id or "system-assigned"
        return f"managed identity {identity} in tenant {self.tenant_id}"


@dataclass(frozen=True, slots=True)
class ServicePrincipalSecret:
    scheme: ClassVar[str] = CLIENT_SECRET

    tenant_id: str
    client_id: str
    subscription_id: str
    token_credential: TokenCredential = field(repr=False, compare=False)

    def storage_credential(self) -> TokenCredential:
        return self.token_credential

    def describe(self) -> str:
        return f"service principal {self.client_id} (client secret) in tenant {self.tenant_id}"


@dataclass(frozen=True, slots=True)
class ServicePrincipalCertificate:
    scheme: ClassVar[str] = CLIENT_CERTIFICATE

    tenant_id: str
    client_id: str
    subscription_id: str
    certificate_path: str
    token_credential: TokenCredential = field(repr=False, compare=False)

    def storage_credential(self) -> TokenCredential:
        return self.token_credential

    def describe(self) -> str:
        return f"service principal {self.client_id} (certificate) in tenant {self.tenant_id}"


CredentialHandle = (
    SharedKey
    | SasToken
    | OidcToken
    | ManagedIdentity
    | ServicePrincipalSecret
    | ServicePrincipalCertificate
)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def configured_schemes(settings: BackendSettings) -> list[str]:
    """Return every scheme for which any credential material is present."""

    present = {
        ACCESS_KEY: bool(settings.access_key),
        SAS_TOKEN: bool(settings.sas_token),
        OIDC: bool(settings.use_oidc or settings.oidc_token or settings.oidc_token_file_path),
        MANAGED_IDENTITY: bool(settings.use_msi),
        CLIENT_SECRET: bool(settings.client_secret),
        CLIENT_CERTIFICATE: bool(
            settings.client_certificate_path or settings.client_certificate_password
        ),
    }
    return [scheme for scheme in SCHEME_ORDER if present[scheme]]


def select_scheme(settings: BackendSettings) -> str:
    """Pick the one configured scheme without touching the network."""

    schemes = configured_schemes(settings)
    if len(schemes) > 1:
        raise ConfigurationError(
            "Credential configuration is ambiguous: "
            f"{', '.join(schemes)} are all set; configure exactly one scheme.",
            conflicting=schemes,
        )
    if not schemes:
        if settings.client_id or settings.tenant_id:
            missing = ("client_secret", "client_certificate_path", "use_oidc", "use_msi")
            raise ConfigurationError(
                "client_id/tenant_id were supplied without credential material; "
                "set one of client_secret, client_certificate_path, use_oidc or use_msi.",
                missing=missing,
            )
        raise ConfigurationError(
            "No credential configured; set one of " + ", ".join(SCHEME_ORDER) + ".",
            missing=SCHEME_ORDER,
        )

    scheme = schemes[0]
    missing = [name for name in _REQUIRED_FIELDS[scheme] if not getattr(settings, name)]
    if scheme == OIDC:
        if settings.oidc_token and settings.oidc_token_file_path:
            raise ConfigurationError(
                "Set only one of oidc_token or oidc_token_file_path.",
                conflicting=("oidc_token", "oidc_token_file_path"),
            )
        if not settings.oidc_token and not settings.oidc_token_file_path:
            missing.append("oidc_token or oidc_token_file_path")
    if missing:
        raise ConfigurationError(
            f"Credential scheme {scheme} is incomplete; missing: {', '.join(missing)}.",
            missing=missing,
        )
    return scheme


def resolve(settings: BackendSettings, *, timeout: float | None = None) -> CredentialHandle:
    """Resolve ``settings`` into a ready-to-use credential handle.

    Identity-based schemes acquire one token for the storage scope so that a
    rejected credential surfaces here as :class:`AuthenticationError` instead
    of on the first state read. Nothing is retried.
    """

    scheme = select_scheme(settings)

    if scheme == ACCESS_KEY:
        handle: CredentialHandle = SharedKey(
            account_name=settings.storage_account_name,
            account_key=settings.access_key or "",
        )
    elif scheme == SAS_TOKEN:
        handle = SasToken(token=(settings.sas_token or "").lstrip("?"))
    else:
        handle = _resolve_token_handle(scheme, settings, timeout=timeout)
        _verify_token(handle)

    logger.info(
        "credentials.resolve.success",
        extra=log_context(scheme=scheme, credential=handle.describe()),
    )
    return handle


def _resolve_token_handle(
    scheme: str,
    settings: BackendSettings,
    *,
    timeout: float | None,
) -> CredentialHandle:
    authority = get_environment(settings.environment).authority_host
    options = _transport_options(timeout)
    tenant_id = settings.tenant_id or ""
    subscription_id = settings.subscription_id or ""
    client_id = settings.client_id or ""

    if scheme == OIDC:
        return OidcToken(
            tenant_id=tenant_id,
            client_id=client_id,
            subscription_id=subscription_id,
            token_credential=ClientAssertionCredential(
                tenant_id,
                client_id,
                _assertion_reader(settings),
                authority=authority,
                **options,
            ),
        )
    if scheme == MANAGED_IDENTITY:
        return ManagedIdentity(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            client_id=settings.client_id,
            token_credential=ManagedIdentityCredential(client_id=settings.client_id, **options),
        )
    if scheme == CLIENT_SECRET:
        return ServicePrincipalSecret(
            tenant_id=tenant_id,
            client_id=client_id,
            subscription_id=subscription_id,
            token_credential=ClientSecretCredential(
                tenant_id,
                client_id,
                settings.client_secret or "",
                authority=authority,
                **options,
            ),
        )

    certificate_path = settings.client_certificate_path or ""
    try:
        credential = CertificateCredential(
            tenant_id,
            client_id,
            certificate_path,
            password=settings.client_certificate_password,
            authority=authority,
            **options,
        )
    except (OSError, ValueError) as exc:
        raise ConfigurationError(
            f"Unable to load client certificate {certificate_path!r}: {exc}",
        ) from exc
    return ServicePrincipalCertificate(
        tenant_id=tenant_id,
        client_id=client_id,
        subscription_id=subscription_id,
        certificate_path=certificate_path,
        token_credential=credential,
    )


def _assertion_reader(settings: BackendSettings):
    token = settings.oidc_token
    if token:
        return lambda: token

    token_path = Path(settings.oidc_token_file_path or "")

    def _read() -> str:
        try:
            return token_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ClientAuthenticationError(
                f"Unable to read OIDC token file {str(token_path)!r}: {exc}"
            ) from exc

    return _read


def _verify_token(handle: CredentialHandle) -> None:
    credential = handle.storage_credential()
    try:
        credential.get_token(STORAGE_SCOPE)
    except AzureError as exc:
        logger.warning(
            "credentials.resolve.rejected",
            extra=log_context(scheme=handle.scheme, credential=handle.describe()),
        )
        raise AuthenticationError(
            f"Authentication with {handle.describe()} failed: {exc}",
        ) from exc


def _transport_options(timeout: float | None) -> dict[str, Any]:
    if timeout is None:
        return {}
    return {"connection_timeout": timeout, "read_timeout": timeout}


def build_container_client(
    handle: CredentialHandle,
    *,
    account_url: str,
    container_name: str,
) -> ContainerClient:
    """Build the container client every store and lock operation goes through.

    Retries are disabled: a retried lease request that actually succeeded the
    first time would come back as "already leased".
    """

    service = BlobServiceClient(
        account_url=account_url,
        credential=handle.storage_credential(),
        retry_total=0,
    )
    return service.get_container_client(container_name)


__all__ = [
    "ACCESS_KEY",
    "CLIENT_CERTIFICATE",
    "CLIENT_SECRET",
    "MANAGED_IDENTITY",
    "OIDC",
    "SAS_TOKEN",
    "SCHEME_ORDER",
    "CredentialHandle",
    "ManagedIdentity",
    "OidcToken",
    "SasToken",
    "ServicePrincipalCertificate",
    "ServicePrincipalSecret",
    "SharedKey",
    "build_container_client",
    "configured_schemes",
    "resolve",
    "select_scheme",
]
