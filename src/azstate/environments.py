"""Named Azure cloud environments."""

from __future__ import annotations

from dataclasses import dataclass

from azure.identity import AzureAuthorityHosts

from .errors import ConfigurationError

STORAGE_SCOPE = "https://storage.azure.com/.default"


@dataclass(frozen=True, slots=True)
class CloudEnvironment:
    name: str
    authority_host: str
    storage_suffix: str

    def account_url(self, account_name: str) -> str:
        return f"https://{account_name}.blob.{self.storage_suffix}"


ENVIRONMENTS: dict[str, CloudEnvironment] = {
    "public": CloudEnvironment(
        name="public",
        authority_host=AzureAuthorityHosts.AZURE_PUBLIC_CLOUD,
        storage_suffix="core.windows.net",
    ),
    "china": CloudEnvironment(
        name="china",
        authority_host=AzureAuthorityHosts.AZURE_CHINA,
        storage_suffix="core.chinacloudapi.cn",
    ),
    "usgovernment": CloudEnvironment(
        name="usgovernment",
        authority_host=AzureAuthorityHosts.AZURE_GOVERNMENT,
        storage_suffix="core.usgovcloudapi.net",
    ),
}


def get_environment(name: str) -> CloudEnvironment:
    try:
        return ENVIRONMENTS[name.strip().lower()]
    except KeyError:
        allowed = ", ".join(sorted(ENVIRONMENTS))
        raise ConfigurationError(
            f"Unknown environment {name!r}; expected one of: {allowed}."
        ) from None


def resolve_account_url(
    account_name: str,
    *,
    environment: str = "public",
    endpoint: str | None = None,
) -> str:
    """Return the blob service URL, preferring an explicit custom endpoint."""

    if endpoint:
        return endpoint.rstrip("/")
    return get_environment(environment).account_url(account_name)


__all__ = [
    "ENVIRONMENTS",
    "STORAGE_SCOPE",
    "CloudEnvironment",
    "get_environment",
    "resolve_account_url",
]
