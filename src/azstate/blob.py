"""Helpers shared by the state store and the lock manager."""

from __future__ import annotations

import base64
import hashlib
import math
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestTimeoutError,
    ServiceResponseTimeoutError,
)

from .errors import AuthenticationError, StorageError, StorageTimeoutError

LEASE_ALREADY_PRESENT = "LeaseAlreadyPresent"
LEASE_ID_MISMATCH = "LeaseIdMismatchWithLeaseOperation"
LEASE_ID_MISMATCH_BLOB = "LeaseIdMismatchWithBlobOperation"
LEASE_ID_MISSING = "LeaseIdMissing"
LEASE_NOT_PRESENT = "LeaseNotPresentWithLeaseOperation"
LEASE_NOT_PRESENT_BLOB = "LeaseNotPresentWithBlobOperation"
CONDITION_NOT_MET = "ConditionNotMet"
BLOB_NOT_FOUND = "BlobNotFound"

# A blob write without the lease (or with the wrong one) on a leased blob.
LEASED_BY_OTHER = frozenset({LEASE_ID_MISSING, LEASE_ID_MISMATCH_BLOB})

# Set on the empty blob a lock creates for a key that has no state yet.
PLACEHOLDER_METADATA_KEY = "stateplaceholder"


def fingerprint(data: bytes) -> str:
    """Base64 MD5 of ``data``, the same encoding Azure uses for Content-MD5."""

    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def encode_md5(value: bytes | bytearray | None) -> str | None:
    if not value:
        return None
    return base64.b64encode(bytes(value)).decode("ascii")


def error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "error_code", None)
    if code is None:
        return None
    return str(getattr(code, "value", code))


def is_placeholder(metadata: Mapping[str, str] | None) -> bool:
    return any(name.lower() == PLACEHOLDER_METADATA_KEY for name in (metadata or {}))


def without_placeholder(metadata: Mapping[str, str] | None) -> dict[str, str]:
    return {
        name: value
        for name, value in (metadata or {}).items()
        if name.lower() != PLACEHOLDER_METADATA_KEY
    }


def request_options(timeout: float | None) -> dict[str, Any]:
    """Bound a single Azure request by ``timeout`` seconds, server and client side."""

    if timeout is None:
        return {}
    return {
        "timeout": max(1, math.ceil(timeout)),
        "connection_timeout": timeout,
        "read_timeout": timeout,
    }


@contextmanager
def translate_errors(operation: str, *, key: str | None = None) -> Iterator[None]:
    """Re-raise Azure SDK failures as ``azstate`` errors.

    Callers inspect lease and precondition error codes themselves before
    falling through to this generic mapping.
    """

    try:
        yield
    except (ServiceRequestTimeoutError, ServiceResponseTimeoutError) as exc:
        raise StorageTimeoutError(
            f"{operation} on {key!r} timed out: {exc}",
            key=key,
            operation=operation,
        ) from exc
    except ClientAuthenticationError as exc:
        raise AuthenticationError(f"{operation} on {key!r} was not authorized: {exc}", key=key) from exc
    except HttpResponseError as exc:
        if exc.status_code in (401, 403):
            raise AuthenticationError(
                f"{operation} on {key!r} was not authorized: {exc}", key=key
            ) from exc
        raise StorageError(
            f"{operation} on {key!r} failed ({error_code(exc) or exc.status_code}): {exc}",
            key=key,
            operation=operation,
        ) from exc
    except AzureError as exc:
        raise StorageError(f"{operation} on {key!r} failed: {exc}", key=key, operation=operation) from exc


__all__ = [
    "BLOB_NOT_FOUND",
    "CONDITION_NOT_MET",
    "LEASED_BY_OTHER",
    "LEASE_ALREADY_PRESENT",
    "LEASE_ID_MISMATCH",
    "LEASE_ID_MISMATCH_BLOB",
    "LEASE_ID_MISSING",
    "LEASE_NOT_PRESENT",
    "LEASE_NOT_PRESENT_BLOB",
    "PLACEHOLDER_METADATA_KEY",
    "encode_md5",
    "error_code",
    "fingerprint",
    "is_placeholder",
    "request_options",
    "translate_errors",
    "without_placeholder",
]
