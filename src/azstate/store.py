"""Blob-backed state store."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from azure.core import MatchConditions
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.storage.blob import BlobClient, BlobProperties, ContainerClient, ContentSettings

from .blob import (
    CONDITION_NOT_MET,
    LEASE_NOT_PRESENT_BLOB,
    LEASED_BY_OTHER,
    encode_md5,
    error_code,
    fingerprint,
    is_placeholder,
    request_options,
    translate_errors,
    without_placeholder,
)
from .errors import (
    FingerprintConflictError,
    LockConflictError,
    LockLostError,
    StateBackendError,
    StorageError,
)
from .keys import is_snapshot_of, snapshot_key
from .locks import LockRecord, current_lock
from .logging import log_context

logger = logging.getLogger(__name__)

STATE_CONTENT_TYPE = "application/json"
_SNAPSHOT_TIME_FORMAT = "%Y%m%dT%H%M%S%fZ"


@dataclass(frozen=True, slots=True)
class StateContent:
    """State bytes as read from or written to the store."""

    data: bytes
    fingerprint: str
    etag: str | None = None


class BlobStateStore:
    """Get, put and delete state blobs with optional pre-write snapshots."""

    def __init__(
        self,
        container: ContainerClient,
        *,
        snapshot: bool = False,
        default_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._container = container
        self._snapshot = snapshot
        self._default_timeout = default_timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    def _options(self, timeout: float | None) -> dict:
        return request_options(timeout if timeout is not None else self._default_timeout)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, key: str, *, timeout: float | None = None) -> StateContent | None:
        """Return the state stored at ``key``, or None when there is none.

        The placeholder a lock creates on a fresh key reads the same as a
        missing blob. Any other blob, empty or not, is returned as stored.
        """

        blob = self._container.get_blob_client(key)
        with translate_errors("state.get", key=key):
            try:
                downloader = blob.download_blob(**self._options(timeout))
            except ResourceNotFoundError:
                logger.debug("state.get.not_found", extra=log_context(key=key))
                return None
            data = downloader.readall()
            etag = downloader.properties.etag
            metadata = downloader.properties.metadata

        if not data and is_placeholder(metadata):
            logger.debug("state.get.placeholder", extra=log_context(key=key))
            return None
        return StateContent(data=data, fingerprint=fingerprint(data), etag=etag)

    def list_keys(self, prefix: str, *, timeout: float | None = None) -> list[str]:
        with translate_errors("state.list", key=prefix):
            return [
                item.name
                for item in self._container.list_blobs(
                    name_starts_with=prefix, **self._options(timeout)
                )
            ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def put(
        self,
        key: str,
        data: bytes,
        *,
        expected_fingerprint: str | None = None,
        expect_absent: bool = False,
        lease_id: str | None = None,
        timeout: float | None = None,
    ) -> StateContent:
        """Write ``data`` to ``key``.

        With ``expected_fingerprint`` the write only happens if the stored
        content still has that fingerprint; with ``expect_absent`` only if no
        state exists yet (a lock placeholder counts as absent). Either way
        the upload is conditioned on the etag observed at the start of the
        call, so two racing writers cannot both succeed. Lock metadata on the
        blob is carried over unchanged.
        """

        if expect_absent and expected_fingerprint is not None:
            raise ValueError("expected_fingerprint and expect_absent are mutually exclusive")

        blob = self._container.get_blob_client(key)
        options = self._options(timeout)
        digest = hashlib.md5(data).digest()

        with translate_errors("state.put", key=key):
            props = self._properties(blob, options)
            has_state = props is not None and not is_placeholder(props.metadata)

            if expected_fingerprint is not None or expect_absent:
                actual = self._stored_fingerprint(blob, props, options)
                if actual != expected_fingerprint:
                    logger.warning(
                        "state.put.conflict",
                        extra=log_context(key=key, expected=expected_fingerprint, actual=actual),
                    )
                    raise FingerprintConflictError(
                        key=key, expected=expected_fingerprint, actual=actual
                    )

            if self._snapshot and has_state:
                self._write_snapshot(blob, key, props, options)

            conditions: dict = {"overwrite": False}
            if props is not None:
                conditions = {
                    "overwrite": True,
                    "etag": props.etag,
                    "match_condition": MatchConditions.IfNotModified,
                }

            try:
                result = blob.upload_blob(
                    data,
                    metadata=without_placeholder(props.metadata) if props is not None else None,
                    content_settings=ContentSettings(
                        content_type=STATE_CONTENT_TYPE,
                        content_md5=bytearray(digest),
                    ),
                    lease=lease_id,
                    **conditions,
                    **options,
                )
            except HttpResponseError as exc:
                code = error_code(exc)
                if code in LEASED_BY_OTHER:
                    holder = current_lock(blob, options)
                    logger.warning(
                        "state.put.locked",
                        extra=log_context(key=key, holder=holder.who if holder else None),
                    )
                    raise LockConflictError(key=key, lock=holder) from exc
                if code == LEASE_NOT_PRESENT_BLOB:
                    logger.warning("state.put.lock_lost", extra=log_context(key=key))
                    raise LockLostError(key=key) from exc
                if code == CONDITION_NOT_MET or isinstance(
                    exc, (ResourceModifiedError, ResourceExistsError)
                ):
                    logger.warning(
                        "state.put.race_lost",
                        extra=log_context(key=key, expected=expected_fingerprint),
                    )
                    raise FingerprintConflictError(
                        key=key, expected=expected_fingerprint, actual=None
                    ) from exc
                raise

        written = StateContent(
            data=data,
            fingerprint=fingerprint(data),
            etag=result.get("etag") if isinstance(result, dict) else None,
        )
        logger.info(
            "state.put.success",
            extra=log_context(key=key, fingerprint=written.fingerprint, byte_size=len(data)),
        )
        return written

    def delete(
        self,
        key: str,
        *,
        lease_id: str | None = None,
        include_snapshots: bool = True,
        timeout: float | None = None,
    ) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

        blob = self._container.get_blob_client(key)
        options = self._options(timeout)
        with translate_errors("state.delete", key=key):
            try:
                blob.delete_blob(delete_snapshots="include", lease=lease_id, **options)
            except ResourceNotFoundError:
                logger.debug("state.delete.not_found", extra=log_context(key=key))
            except HttpResponseError as exc:
                code = error_code(exc)
                if code in LEASED_BY_OTHER:
                    raise LockConflictError(key=key, lock=current_lock(blob, options)) from exc
                if code == LEASE_NOT_PRESENT_BLOB:
                    raise LockLostError(key=key) from exc
                raise
            else:
                logger.info("state.delete.success", extra=log_context(key=key))

        if include_snapshots:
            for name in self.list_keys(f"{key}.", timeout=timeout):
                if not is_snapshot_of(name, key):
                    continue
                with translate_errors("state.delete", key=name):
                    try:
                        self._container.get_blob_client(name).delete_blob(**options)
                    except ResourceNotFoundError:
                        continue

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _properties(blob: BlobClient, options: dict) -> BlobProperties | None:
        try:
            return blob.get_blob_properties(**options)
        except ResourceNotFoundError:
            return None

    @staticmethod
    def _stored_fingerprint(
        blob: BlobClient,
        props: BlobProperties | None,
        options: dict,
    ) -> str | None:
        if props is None or is_placeholder(props.metadata):
            return None
        stored = encode_md5(props.content_settings.content_md5)
        if stored is not None:
            return stored
        # Blobs written by other tools may lack Content-MD5.
        data = blob.download_blob(
            etag=props.etag,
            match_condition=MatchConditions.IfNotModified,
            **options,
        ).readall()
        return fingerprint(data)

    def _write_snapshot(
        self,
        blob: BlobClient,
        key: str,
        props: BlobProperties,
        options: dict,
    ) -> None:
        target = snapshot_key(key, self._clock().strftime(_SNAPSHOT_TIME_FORMAT))
        try:
            with translate_errors("state.snapshot", key=target):
                data = blob.download_blob(
                    etag=props.etag,
                    match_condition=MatchConditions.IfNotModified,
                    **options,
                ).readall()
                self._container.get_blob_client(target).upload_blob(
                    data,
                    overwrite=False,
                    content_settings=ContentSettings(
                        content_type=STATE_CONTENT_TYPE,
                        content_md5=bytearray(hashlib.md5(data).digest()),
                    ),
                    **options,
                )
        except StateBackendError as exc:
            logger.error("state.snapshot.failed", extra=log_context(key=key, snapshot=target))
            raise StorageError(
                f"Snapshot of {key!r} to {target!r} failed; state was not written: {exc}",
                key=key,
                operation="state.snapshot",
            ) from exc
        logger.info("state.snapshot.success", extra=log_context(key=key, snapshot=target))


__all__ = ["STATE_CONTENT_TYPE", "BlobStateStore", "StateContent"]
