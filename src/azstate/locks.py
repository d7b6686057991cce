"""Lease-based locking on state blobs.

A lock is an Azure blob lease on the state blob itself, plus a
:class:`LockRecord` stored in the blob's metadata so operators (and losing
contenders) can see who holds it. The lease is authoritative: a blob is
locked exactly when its lease state is ``leased`` or ``breaking``.

The lease and the record cannot be written in one request. Between a
successful lease acquisition and the metadata write, a contender sees a
leased blob without a record and is told the holder is unknown. If the
metadata write fails the lease is released again.
"""

from __future__ import annotations

import getpass
import hashlib
import json
import logging
import socket
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.storage.blob import (
    BlobClient,
    BlobLeaseClient,
    BlobProperties,
    ContainerClient,
    ContentSettings,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .blob import (
    LEASE_ALREADY_PRESENT,
    LEASE_ID_MISMATCH,
    LEASE_ID_MISMATCH_BLOB,
    LEASE_ID_MISSING,
    LEASE_NOT_PRESENT,
    LEASE_NOT_PRESENT_BLOB,
    PLACEHOLDER_METADATA_KEY,
    error_code,
    request_options,
    translate_errors,
)
from .errors import LockConflictError, LockLostError, LockMismatchError, LockNotFoundError
from .logging import log_context
from .settings import INFINITE_LEASE

logger = logging.getLogger(__name__)

LOCK_METADATA_KEY = "statelock"
UNKNOWN_HOLDER = "unknown"

_LOCKED_STATES = frozenset({"leased", "breaking"})
_MISMATCH_CODES = frozenset({LEASE_ID_MISMATCH, LEASE_ID_MISMATCH_BLOB, LEASE_ID_MISSING})
_NOT_PRESENT_CODES = frozenset({LEASE_NOT_PRESENT, LEASE_NOT_PRESENT_BLOB})
_LEASE_NAMESPACE = uuid.UUID("6f1c6d0e-93a4-4f3b-9a3e-1d0c2b8e7a51")


def _default_who() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class LockRecord(BaseModel):
    """Who holds a state lock, since when, and why."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    who: str = Field(default_factory=_default_who)
    operation: str = ""
    info: str = ""
    path: str = ""
    created: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_metadata(self) -> dict[str, str]:
        # Metadata values travel as HTTP headers, so keep them ASCII.
        payload = self.model_dump(mode="json")
        return {LOCK_METADATA_KEY: json.dumps(payload, ensure_ascii=True, separators=(",", ":"))}

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, str] | None) -> LockRecord | None:
        raw = _metadata_value(metadata)
        if raw is None:
            return None
        try:
            return cls.model_validate_json(raw)
        except ValidationError:
            logger.warning("lock.record.unreadable", extra=log_context(raw=raw[:200]))
            return None

    @classmethod
    def unknown(cls, *, since: datetime | None) -> LockRecord:
        return cls(id="", who=UNKNOWN_HOLDER, created=since or datetime.now(UTC))


def _metadata_value(metadata: Mapping[str, str] | None) -> str | None:
    for name, value in (metadata or {}).items():
        if name.lower() == LOCK_METADATA_KEY:
            return value
    return None


def _without_lock(metadata: Mapping[str, str] | None) -> dict[str, str]:
    return {
        name: value
        for name, value in (metadata or {}).items()
        if name.lower() != LOCK_METADATA_KEY
    }


def lease_id_for(lock_id: str) -> str:
    """Map a lock ID onto the GUID Azure requires as a lease ID.

    GUID lock IDs are used as-is; anything else maps deterministically, so
    every process presenting the same lock ID presents the same lease.
    """

    try:
        return str(uuid.UUID(lock_id))
    except ValueError:
        return str(uuid.uuid5(_LEASE_NAMESPACE, lock_id))


def is_locked(props: BlobProperties) -> bool:
    lease = getattr(props, "lease", None)
    return getattr(lease, "state", None) in _LOCKED_STATES


def current_lock(blob: BlobClient, options: dict) -> LockRecord | None:
    """Return the active lock on ``blob``, or None if it is not leased."""

    try:
        props = blob.get_blob_properties(**options)
    except ResourceNotFoundError:
        return None
    if not is_locked(props):
        return None
    record = LockRecord.from_metadata(props.metadata)
    return record or LockRecord.unknown(since=getattr(props, "last_modified", None))


class LeaseHeartbeat:
    """Renew a finite lease in the background until stopped.

    A failed renewal stops the heartbeat and marks the lease as lost; the
    owner checks :attr:`lost` before writing under the lease.
    """

    def __init__(
        self,
        lease: BlobLeaseClient,
        *,
        key: str,
        interval: float,
        timeout: float | None = None,
    ) -> None:
        self._lease = lease
        self._key = key
        self._interval = interval
        self._timeout = timeout
        self._error: AzureError | None = None
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"azstate-lease-{key}",
            daemon=True,
        )

    @property
    def lease(self) -> BlobLeaseClient:
        return self._lease

    @property
    def lease_id(self) -> str:
        return self._lease.id

    @property
    def lost(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> AzureError | None:
        return self._error

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set() and not self.lost

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval)

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._lease.renew(**request_options(self._timeout))
            except AzureError as exc:
                self._error = exc
                logger.warning(
                    "lock.heartbeat.lost",
                    extra=log_context(key=self._key, error=str(exc)),
                )
                return
            logger.debug("lock.heartbeat.renewed", extra=log_context(key=self._key))


class LockManager:
    """Acquire, renew and release leases on state blobs."""

    def __init__(
        self,
        container: ContainerClient,
        *,
        lease_duration: int = 60,
        default_timeout: float | None = None,
    ) -> None:
        self._container = container
        self._lease_duration = lease_duration
        self._default_timeout = default_timeout
        self._heartbeats: dict[str, LeaseHeartbeat] = {}

    def _options(self, timeout: float | None) -> dict:
        return request_options(timeout if timeout is not None else self._default_timeout)

    def _lease_client(self, blob: BlobClient, lock_id: str | None = None) -> BlobLeaseClient:
        return BlobLeaseClient(blob, lease_id=lease_id_for(lock_id) if lock_id else None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def lock_info(self, key: str, *, timeout: float | None = None) -> LockRecord | None:
        blob = self._container.get_blob_client(key)
        with translate_errors("lock.info", key=key):
            return current_lock(blob, self._options(timeout))

    def heartbeat(self, key: str) -> LeaseHeartbeat | None:
        return self._heartbeats.get(key)

    def ensure_held(self, key: str, lock_id: str) -> None:
        """Raise :class:`LockLostError` if the heartbeat for ``key`` lost its lease."""

        heartbeat = self._heartbeats.get(key)
        if heartbeat is not None and heartbeat.lost:
            raise LockLostError(key=key, lock_id=lock_id) from heartbeat.error

    def abandon(self, key: str) -> None:
        """Stop renewing the lease on ``key`` after the service reported it gone."""

        self._stop_heartbeat(key)
        logger.warning("lock.lost", extra=log_context(key=key))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def acquire(
        self,
        key: str,
        record: LockRecord,
        *,
        timeout: float | None = None,
    ) -> LockRecord:
        """Lease ``key`` for ``record.id`` and publish ``record`` on the blob.

        Raises :class:`LockConflictError` naming the current holder when the
        blob is already leased under a different ID. Never waits or retries.
        """

        blob = self._container.get_blob_client(key)
        options = self._options(timeout)
        record = record.model_copy(update={"path": key})

        with translate_errors("lock.acquire", key=key):
            self._ensure_placeholder(blob, options)
            try:
                lease = blob.acquire_lease(
                    lease_duration=self._lease_duration,
                    lease_id=lease_id_for(record.id),
                    **options,
                )
            except HttpResponseError as exc:
                if error_code(exc) != LEASE_ALREADY_PRESENT:
                    raise
                holder = current_lock(blob, options)
                logger.warning(
                    "lock.acquire.conflict",
                    extra=log_context(
                        key=key,
                        lock_id=record.id,
                        holder=holder.who if holder else None,
                        holder_lock_id=holder.id if holder else None,
                    ),
                )
                raise LockConflictError(key=key, lock=holder) from exc

            try:
                props = blob.get_blob_properties(**options)
                metadata = _without_lock(props.metadata)
                metadata.update(record.to_metadata())
                blob.set_blob_metadata(metadata=metadata, lease=lease, **options)
            except BaseException:
                self._rollback(lease, key, options)
                raise

        if self._lease_duration != INFINITE_LEASE:
            self._start_heartbeat(key, lease, timeout)
        logger.info(
            "lock.acquire.success",
            extra=log_context(key=key, lock_id=record.id, who=record.who),
        )
        return record

    def renew(self, key: str, lock_id: str, *, timeout: float | None = None) -> None:
        blob = self._container.get_blob_client(key)
        with translate_errors("lock.renew", key=key):
            try:
                self._lease_client(blob, lock_id).renew(**self._options(timeout))
            except ResourceNotFoundError as exc:
                raise LockNotFoundError(f"State {key!r} does not exist.", key=key) from exc
            except HttpResponseError as exc:
                self._raise_lease_error(exc, blob, key, lock_id, timeout)

    def unlock(self, key: str, lock_id: str, *, timeout: float | None = None) -> None:
        """Release the lock on ``key`` if, and only if, ``lock_id`` holds it."""

        blob = self._container.get_blob_client(key)
        options = self._options(timeout)
        with translate_errors("lock.release", key=key):
            try:
                props = blob.get_blob_properties(**options)
            except ResourceNotFoundError as exc:
                raise LockNotFoundError(f"State {key!r} does not exist.", key=key) from exc
            if not is_locked(props):
                raise LockNotFoundError(f"State {key!r} is not locked.", key=key)

            holder = LockRecord.from_metadata(props.metadata)
            if holder is not None and lease_id_for(holder.id) != lease_id_for(lock_id):
                logger.warning(
                    "lock.release.mismatch",
                    extra=log_context(key=key, lock_id=lock_id, holder_lock_id=holder.id),
                )
                raise LockMismatchError(key=key, lock_id=lock_id, lock=holder)

            # No renewal may be in flight while the lease is released.
            heartbeat = self._heartbeats.pop(key, None)
            if heartbeat is not None:
                heartbeat.stop()
            try:
                blob.set_blob_metadata(
                    metadata=_without_lock(props.metadata),
                    lease=lease_id_for(lock_id),
                    **options,
                )
                self._lease_client(blob, lock_id).release(**options)
            except HttpResponseError as exc:
                if heartbeat is not None and not heartbeat.lost:
                    if error_code(exc) not in _NOT_PRESENT_CODES:
                        self._start_heartbeat(key, heartbeat.lease, timeout)
                self._raise_lease_error(exc, blob, key, lock_id, timeout)

        logger.info("lock.release.success", extra=log_context(key=key, lock_id=lock_id))

    def force_unlock(
        self,
        key: str,
        lock_id: str | None = None,
        *,
        timeout: float | None = None,
    ) -> LockRecord | None:
        """Break whatever lease is on ``key`` and clear its lock record.

        Returns the record that was cleared. ``lock_id`` is only used for
        logging; the lease is broken regardless of who holds it.
        """

        blob = self._container.get_blob_client(key)
        options = self._options(timeout)
        with translate_errors("lock.force_unlock", key=key):
            try:
                props = blob.get_blob_properties(**options)
            except ResourceNotFoundError as exc:
                raise LockNotFoundError(f"State {key!r} does not exist.", key=key) from exc

            holder = LockRecord.from_metadata(props.metadata)
            locked = is_locked(props)
            if not locked and holder is None:
                raise LockNotFoundError(f"State {key!r} is not locked.", key=key)
            if lock_id and holder is not None and holder.id != lock_id:
                logger.warning(
                    "lock.force_unlock.id_mismatch",
                    extra=log_context(key=key, lock_id=lock_id, holder_lock_id=holder.id),
                )

            if locked:
                self._lease_client(blob).break_lease(lease_break_period=0, **options)
            if holder is not None:
                blob.set_blob_metadata(metadata=_without_lock(props.metadata), **options)

        self._stop_heartbeat(key)
        logger.warning(
            "lock.force_unlock.success",
            extra=log_context(
                key=key,
                lock_id=lock_id,
                holder=holder.who if holder else None,
                lease_broken=locked,
            ),
        )
        if holder is None:
            return LockRecord.unknown(since=getattr(props, "last_modified", None))
        return holder

    def close(self) -> None:
        """Stop every heartbeat started by this manager. Leases are left to expire."""

        for key in list(self._heartbeats):
            self._stop_heartbeat(key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _ensure_placeholder(blob: BlobClient, options: dict) -> None:
        try:
            blob.upload_blob(
                b"",
                overwrite=False,
                metadata={PLACEHOLDER_METADATA_KEY: "true"},
                content_settings=ContentSettings(
                    content_type="application/json",
                    content_md5=bytearray(hashlib.md5(b"").digest()),
                ),
                **options,
            )
        except ResourceExistsError:
            return
        except HttpResponseError as exc:
            # An existing leased blob can reject the create with a lease error.
            if error_code(exc) in _MISMATCH_CODES:
                return
            raise
        logger.debug("lock.placeholder.created", extra=log_context(key=blob.blob_name))

    def _rollback(self, lease: BlobLeaseClient, key: str, options: dict) -> None:
        try:
            lease.release(**options)
        except AzureError as exc:
            logger.error(
                "lock.acquire.rollback_failed",
                extra=log_context(key=key, error=str(exc)),
            )
        else:
            logger.warning("lock.acquire.rolled_back", extra=log_context(key=key))

    def _raise_lease_error(
        self,
        exc: HttpResponseError,
        blob: BlobClient,
        key: str,
        lock_id: str,
        timeout: float | None,
    ) -> None:
        code = error_code(exc)
        if code in _MISMATCH_CODES:
            holder = current_lock(blob, self._options(timeout))
            raise LockMismatchError(key=key, lock_id=lock_id, lock=holder) from exc
        if code in _NOT_PRESENT_CODES:
            raise LockNotFoundError(f"State {key!r} is not locked.", key=key) from exc
        raise exc

    def _start_heartbeat(self, key: str, lease: BlobLeaseClient, timeout: float | None) -> None:
        self._stop_heartbeat(key)
        heartbeat = LeaseHeartbeat(
            lease,
            key=key,
            interval=self._lease_duration / 3,
            timeout=timeout if timeout is not None else self._default_timeout,
        )
        self._heartbeats[key] = heartbeat
        heartbeat.start()

    def _stop_heartbeat(self, key: str) -> None:
        heartbeat = self._heartbeats.pop(key, None)
        if heartbeat is not None:
            heartbeat.stop()


__all__ = [
    "LOCK_METADATA_KEY",
    "LeaseHeartbeat",
    "LockManager",
    "LockRecord",
    "current_lock",
    "is_locked",
    "lease_id_for",
]
