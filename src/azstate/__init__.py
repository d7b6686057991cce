"""Remote state storage and locking on Azure Blob Storage."""

from __future__ import annotations

from .backend import Backend, build_backend
from .credentials import (
    CredentialHandle,
    ManagedIdentity,
    OidcToken,
    SasToken,
    ServicePrincipalCertificate,
    ServicePrincipalSecret,
    SharedKey,
    build_container_client,
    resolve,
)
from .errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    FingerprintConflictError,
    LockConflictError,
    LockLostError,
    LockMismatchError,
    LockNotFoundError,
    NotFoundError,
    StateBackendError,
    StorageError,
    StorageTimeoutError,
)
from .keys import DEFAULT_WORKSPACE, state_key, validate_workspace
from .locks import LockManager, LockRecord
from .settings import BackendSettings
from .store import BlobStateStore, StateContent

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_WORKSPACE",
    "AuthenticationError",
    "Backend",
    "BackendSettings",
    "BlobStateStore",
    "ConfigurationError",
    "ConflictError",
    "CredentialHandle",
    "FingerprintConflictError",
    "LockConflictError",
    "LockLostError",
    "LockManager",
    "LockMismatchError",
    "LockNotFoundError",
    "LockRecord",
    "ManagedIdentity",
    "NotFoundError",
    "OidcToken",
    "SasToken",
    "ServicePrincipalCertificate",
    "ServicePrincipalSecret",
    "SharedKey",
    "StateBackendError",
    "StateContent",
    "StorageError",
    "StorageTimeoutError",
    "build_backend",
    "build_container_client",
    "resolve",
    "state_key",
    "validate_workspace",
]
