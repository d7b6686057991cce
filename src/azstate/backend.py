"""Remote state backend on Azure Blob Storage.

One :class:`Backend` owns one resolved credential and one container client.
Each workspace maps to exactly one blob; state reads, writes and the lock all
target that same blob.
"""

from __future__ import annotations

import logging
from types import TracebackType

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import ContainerClient

from .blob import request_options, translate_errors
from .credentials import CredentialHandle, build_container_client, resolve
from .environments import resolve_account_url
from .errors import ConfigurationError, LockConflictError, LockLostError, StorageError
from .keys import DEFAULT_WORKSPACE, state_key, workspace_from_key
from .locks import LockManager, LockRecord, lease_id_for
from .logging import log_context
from .settings import BackendSettings
from .store import BlobStateStore, StateContent

logger = logging.getLogger(__name__)


class Backend:
    """Workspace-level state and lock operations."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        credential: CredentialHandle | None = None,
        container: ContainerClient | None = None,
    ) -> None:
        self._settings = settings
        timeout = settings.request_timeout_seconds
        if container is None:
            if credential is None:
                credential = resolve(settings, timeout=timeout)
            container = build_container_client(
                credential,
                account_url=resolve_account_url(
                    settings.storage_account_name,
                    environment=settings.environment,
                    endpoint=settings.endpoint,
                ),
                container_name=settings.container_name,
            )
        self._credential = credential
        self._container = container
        self._store = BlobStateStore(
            container,
            snapshot=settings.snapshot,
            default_timeout=timeout,
        )
        self._locks = LockManager(
            container,
            lease_duration=settings.lease_duration_seconds,
            default_timeout=timeout,
        )
        # Fingerprint of the last content this instance read or wrote, per workspace.
        self._fingerprints: dict[str, str | None] = {}
        # Lock IDs this instance currently holds, per workspace.
        self._held: dict[str, str] = {}

    @property
    def settings(self) -> BackendSettings:
        return self._settings

    @property
    def store(self) -> BlobStateStore:
        return self._store

    @property
    def locks(self) -> LockManager:
        return self._locks

    def key_for(self, workspace: str) -> str:
        return state_key(
            self._settings.key,
            workspace,
            prefix=self._settings.workspace_key_prefix,
        )

    # ------------------------------------------------------------------
    # Container / workspaces
    # ------------------------------------------------------------------
    def check(self, *, timeout: float | None = None) -> None:
        """Raise if the configured container is not reachable."""

        options = request_options(timeout or self._settings.request_timeout_seconds)
        with translate_errors("container.check", key=self._settings.container_name):
            try:
                self._container.get_container_properties(**options)
            except ResourceNotFoundError as exc:
                raise StorageError(
                    f"Container {self._settings.container_name!r} does not exist "
                    "or is not accessible.",
                    operation="container.check",
                ) from exc

    def workspaces(self, *, timeout: float | None = None) -> list[str]:
        prefix = self._settings.workspace_key_prefix
        names = {
            name
            for blob_name in self._store.list_keys(f"{prefix}/", timeout=timeout)
            if (name := workspace_from_key(blob_name, self._settings.key, prefix=prefix))
        }
        return [DEFAULT_WORKSPACE, *sorted(names)]

    def delete_workspace(self, workspace: str, *, timeout: float | None = None) -> None:
        if workspace == DEFAULT_WORKSPACE:
            raise ConfigurationError("The default workspace cannot be deleted.")
        key = self.key_for(workspace)
        holder = self._locks.lock_info(key, timeout=timeout)
        if holder is not None:
            raise LockConflictError(key=key, lock=holder)
        self._store.delete(key, timeout=timeout)
        self._fingerprints.pop(workspace, None)
        logger.info("workspace.delete.success", extra=log_context(workspace=workspace, key=key))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def read_state(self, workspace: str, *, timeout: float | None = None) -> StateContent | None:
        content = self._store.get(self.key_for(workspace), timeout=timeout)
        self._fingerprints[workspace] = content.fingerprint if content is not None else None
        return content

    def write_state(
        self,
        workspace: str,
        data: bytes,
        *,
        fingerprint: str | None = None,
        timeout: float | None = None,
    ) -> StateContent:
        """Write ``data`` as the workspace's new state.

        The write is conditioned on ``fingerprint`` or, when omitted, on what
        this backend last read or wrote for the workspace. If that read found
        no state, the write only succeeds while there still is none. A
        workspace never read by this instance is written unconditionally.
        """

        key = self.key_for(workspace)
        expect_absent = False
        expected = fingerprint
        if expected is None and workspace in self._fingerprints:
            expected = self._fingerprints[workspace]
            expect_absent = expected is None

        held = self._held.get(workspace)
        if held:
            self._locks.ensure_held(key, held)
        try:
            written = self._store.put(
                key,
                data,
                expected_fingerprint=expected,
                expect_absent=expect_absent,
                lease_id=lease_id_for(held) if held else None,
                timeout=timeout,
            )
        except LockLostError as exc:
            if not held:
                raise
            self._locks.abandon(key)
            raise LockLostError(key=key, lock_id=held) from exc
        self._fingerprints[workspace] = written.fingerprint
        return written

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------
    def lock(
        self,
        workspace: str,
        info: LockRecord | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        """Lock the workspace and return the lock ID to pass to :meth:`unlock`."""

        record = self._locks.acquire(
            self.key_for(workspace),
            info or LockRecord(),
            timeout=timeout,
        )
        self._held[workspace] = record.id
        return record.id

    def unlock(self, workspace: str, lock_id: str, *, timeout: float | None = None) -> None:
        self._locks.unlock(self.key_for(workspace), lock_id, timeout=timeout)
        if self._held.get(workspace) == lock_id:
            del self._held[workspace]

    def force_unlock(
        self,
        workspace: str,
        lock_id: str | None = None,
        *,
        timeout: float | None = None,
    ) -> LockRecord | None:
        cleared = self._locks.force_unlock(self.key_for(workspace), lock_id, timeout=timeout)
        self._held.pop(workspace, None)
        return cleared

    def lock_info(self, workspace: str, *, timeout: float | None = None) -> LockRecord | None:
        return self._locks.lock_info(self.key_for(workspace), timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        self._locks.close()

    def __enter__(self) -> Backend:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def build_backend(settings: BackendSettings) -> Backend:
    return Backend(settings)


__all__ = ["Backend", "build_backend"]
