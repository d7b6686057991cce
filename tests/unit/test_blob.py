from __future__ import annotations

import base64
import hashlib

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceModifiedError,
    ServiceRequestError,
    ServiceResponseTimeoutError,
)

from azstate.blob import encode_md5, error_code, fingerprint, request_options, translate_errors
from azstate.errors import AuthenticationError, StorageError, StorageTimeoutError
from tests.fakes import storage_error


def test_fingerprint_matches_content_md5_encoding() -> None:
    digest = hashlib.md5(b'{"version": 4}').digest()

    assert fingerprint(b'{"version": 4}') == base64.b64encode(digest).decode("ascii")
    assert encode_md5(bytearray(digest)) == fingerprint(b'{"version": 4}')
    assert encode_md5(None) is None


def test_error_code_reads_storage_error_code() -> None:
    exc = storage_error(ResourceModifiedError, "ConditionNotMet", 412)

    assert error_code(exc) == "ConditionNotMet"
    assert error_code(ValueError("boom")) is None


def test_request_options_bound_server_and_client_time() -> None:
    assert request_options(None) == {}
    assert request_options(2.5) == {"timeout": 3, "connection_timeout": 2.5, "read_timeout": 2.5}
    assert request_options(0.1)["timeout"] == 1


def test_translate_errors_maps_timeouts() -> None:
    with pytest.raises(StorageTimeoutError) as excinfo:
        with translate_errors("read", key="prod"):
            raise ServiceResponseTimeoutError("read timed out")

    assert excinfo.value.operation == "read"
    assert excinfo.value.key == "prod"


@pytest.mark.parametrize(
    "exc",
    [
        ClientAuthenticationError("token expired"),
        storage_error(HttpResponseError, "AuthorizationPermissionMismatch", 403),
    ],
)
def test_translate_errors_maps_authorization_failures(exc: Exception) -> None:
    with pytest.raises(AuthenticationError):
        with translate_errors("write", key="prod"):
            raise exc


def test_translate_errors_maps_service_and_transport_failures() -> None:
    with pytest.raises(StorageError, match="ServerBusy"):
        with translate_errors("write", key="prod"):
            raise storage_error(HttpResponseError, "ServerBusy", 503)

    with pytest.raises(StorageError) as excinfo:
        with translate_errors("delete", key="prod"):
            raise ServiceRequestError("connection reset")
    assert excinfo.value.operation == "delete"


def test_translate_errors_leaves_other_exceptions_alone() -> None:
    with pytest.raises(KeyError):
        with translate_errors("read"):
            raise KeyError("x")
