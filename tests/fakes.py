"""In-memory stand-ins for the Azure container, blob and lease clients.

They reproduce the service behaviour the backend depends on: etags,
Content-MD5, metadata replacement on upload, leases and the storage error
codes raised when a lease or precondition does not match.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)


def storage_error(cls: type[HttpResponseError], code: str, status: int) -> HttpResponseError:
    exc = cls(message=f"{code}: the storage service rejected the request")
    exc.error_code = code
    exc.status_code = status
    return exc


def _lease_id(lease: Any) -> str | None:
    if lease is None:
        return None
    return getattr(lease, "id", lease)


@dataclass
class FakeBlob:
    data: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)
    content_md5: bytearray | None = None
    etag_counter: int = 1
    lease_state: str = "available"
    lease_id: str | None = None
    last_modified: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def etag(self) -> str:
        return f'"0x{self.etag_counter:04X}"'

    def touch(self) -> None:
        self.etag_counter += 1
        self.last_modified = datetime.now(UTC)


class FakeContainer:
    def __init__(self, *, exists: bool = True) -> None:
        self.blobs: dict[str, FakeBlob] = {}
        self.exists = exists
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        # method name -> exception raised (once) the next time it is called
        self.failures: dict[str, BaseException] = {}

    def get_blob_client(self, blob: str, **_kwargs: Any) -> FakeBlobClient:
        return FakeBlobClient(self, blob)

    def list_blobs(self, name_starts_with: str | None = None, **kwargs: Any):
        self._record("list_blobs", name_starts_with or "", kwargs)
        return [
            SimpleNamespace(name=name)
            for name in sorted(self.blobs)
            if not name_starts_with or name.startswith(name_starts_with)
        ]

    def get_container_properties(self, **kwargs: Any) -> dict[str, Any]:
        self._record("get_container_properties", "", kwargs)
        if not self.exists:
            raise storage_error(ResourceNotFoundError, "ContainerNotFound", 404)
        return {"name": "tfstate"}

    def _record(self, method: str, name: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((method, name, kwargs))
        failure = self.failures.pop(method, None)
        if failure is not None:
            raise failure


class FakeDownloader:
    def __init__(self, blob: FakeBlob) -> None:
        self._data = blob.data
        self.properties = SimpleNamespace(
            etag=blob.etag,
            size=len(blob.data),
            metadata=dict(blob.metadata),
        )

    def readall(self) -> bytes:
        return self._data


class FakeBlobClient:
    def __init__(self, container: FakeContainer, name: str) -> None:
        self._container = container
        self.blob_name = name

    @property
    def _blob(self) -> FakeBlob | None:
        return self._container.blobs.get(self.blob_name)

    def _require(self) -> FakeBlob:
        blob = self._blob
        if blob is None:
            raise storage_error(ResourceNotFoundError, "BlobNotFound", 404)
        return blob

    def _check_write_lease(self, blob: FakeBlob, lease: Any) -> None:
        presented = _lease_id(lease)
        if blob.lease_state in {"leased", "breaking"}:
            if presented is None:
                raise storage_error(ResourceModifiedError, "LeaseIdMissing", 412)
            if presented != blob.lease_id:
                raise storage_error(ResourceModifiedError, "LeaseIdMismatchWithBlobOperation", 412)
        elif presented is not None:
            raise storage_error(ResourceModifiedError, "LeaseNotPresentWithBlobOperation", 412)

    def download_blob(self, etag: str | None = None, match_condition: Any = None, **kwargs: Any):
        self._container._record("download_blob", self.blob_name, kwargs)
        blob = self._require()
        if etag is not None and etag != blob.etag:
            raise storage_error(ResourceModifiedError, "ConditionNotMet", 412)
        return FakeDownloader(blob)

    def get_blob_properties(self, **kwargs: Any):
        self._container._record("get_blob_properties", self.blob_name, kwargs)
        blob = self._require()
        return SimpleNamespace(
            name=self.blob_name,
            etag=blob.etag,
            size=len(blob.data),
            metadata=dict(blob.metadata),
            last_modified=blob.last_modified,
            content_settings=SimpleNamespace(content_md5=blob.content_md5),
            lease=SimpleNamespace(
                state=blob.lease_state,
                status="locked" if blob.lease_state == "leased" else "unlocked",
            ),
        )

    def upload_blob(
        self,
        data: bytes,
        overwrite: bool = False,
        metadata: dict[str, str] | None = None,
        content_settings: Any = None,
        lease: Any = None,
        etag: str | None = None,
        match_condition: Any = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        self._container._record("upload_blob", self.blob_name, kwargs)
        blob = self._blob
        if blob is not None and not overwrite and etag is None:
            raise storage_error(ResourceExistsError, "BlobAlreadyExists", 409)
        if blob is not None:
            self._check_write_lease(blob, lease)
            if etag is not None and etag != blob.etag:
                raise storage_error(ResourceModifiedError, "ConditionNotMet", 412)
        elif etag is not None:
            raise storage_error(ResourceModifiedError, "ConditionNotMet", 412)

        if blob is None:
            blob = FakeBlob()
            self._container.blobs[self.blob_name] = blob
        blob.data = bytes(data)
        blob.metadata = dict(metadata or {})
        md5 = getattr(content_settings, "content_md5", None)
        blob.content_md5 = bytearray(md5) if md5 else None
        blob.touch()
        return {"etag": blob.etag, "last_modified": blob.last_modified}

    def set_blob_metadata(
        self,
        metadata: dict[str, str] | None = None,
        lease: Any = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        self._container._record("set_blob_metadata", self.blob_name, kwargs)
        blob = self._require()
        self._check_write_lease(blob, lease)
        blob.metadata = dict(metadata or {})
        blob.touch()
        return {"etag": blob.etag}

    def delete_blob(self, delete_snapshots: str | None = None, lease: Any = None, **kwargs: Any):
        self._container._record("delete_blob", self.blob_name, kwargs)
        blob = self._require()
        self._check_write_lease(blob, lease)
        del self._container.blobs[self.blob_name]

    def acquire_lease(self, lease_duration: int = -1, lease_id: str | None = None, **kwargs: Any):
        self._container._record("acquire_lease", self.blob_name, kwargs)
        blob = self._require()
        if blob.lease_state in {"leased", "breaking"} and blob.lease_id != lease_id:
            raise storage_error(ResourceExistsError, "LeaseAlreadyPresent", 409)
        lease = FakeLease(self, lease_id=lease_id)
        blob.lease_state = "leased"
        blob.lease_id = lease.id
        return lease


class FakeLease:
    """Drop-in for ``azure.storage.blob.BlobLeaseClient``."""

    def __init__(self, client: FakeBlobClient, lease_id: str | None = None) -> None:
        self._client = client
        self.id = lease_id or str(uuid.uuid4())
        self.renewals = 0

    def _leased_blob(self) -> FakeBlob:
        blob = self._client._require()
        if blob.lease_state not in {"leased", "breaking"}:
            raise storage_error(HttpResponseError, "LeaseNotPresentWithLeaseOperation", 409)
        return blob

    def _owned_blob(self) -> FakeBlob:
        blob = self._leased_blob()
        if blob.lease_id != self.id:
            raise storage_error(HttpResponseError, "LeaseIdMismatchWithLeaseOperation", 409)
        return blob

    def renew(self, **kwargs: Any) -> None:
        self._client._container._record("renew_lease", self._client.blob_name, kwargs)
        self._owned_blob()
        self.renewals += 1

    def release(self, **kwargs: Any) -> None:
        self._client._container._record("release_lease", self._client.blob_name, kwargs)
        blob = self._owned_blob()
        blob.lease_state = "available"
        blob.lease_id = None

    def break_lease(self, lease_break_period: int | None = None, **kwargs: Any) -> int:
        self._client._container._record("break_lease", self._client.blob_name, kwargs)
        blob = self._leased_blob()
        blob.lease_state = "broken"
        blob.lease_id = None
        return 0
