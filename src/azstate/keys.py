"""Workspace name to blob key mapping."""

from __future__ import annotations

import re

from .errors import ConfigurationError

DEFAULT_WORKSPACE = "default"

_WORKSPACE_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")
_MAX_WORKSPACE_LENGTH = 90


def validate_workspace(name: str) -> str:
    """Return ``name`` unchanged or raise ``ConfigurationError``.

    Names may not contain ``/``, which keeps the mapping below injective.
    """

    if not name:
        raise ConfigurationError("Workspace name must not be empty.")
    if len(name) > _MAX_WORKSPACE_LENGTH:
        raise ConfigurationError(
            f"Workspace name {name!r} exceeds {_MAX_WORKSPACE_LENGTH} characters."
        )
    if name in {".", ".."} or not _WORKSPACE_PATTERN.match(name):
        raise ConfigurationError(
            f"Workspace name {name!r} may only contain letters, digits, '_', '-' and '.'."
        )
    return name


def state_key(base_key: str, workspace: str, *, prefix: str) -> str:
    """Map ``workspace`` to the blob holding its state."""

    validate_workspace(workspace)
    if workspace == DEFAULT_WORKSPACE:
        return base_key
    return f"{prefix}/{workspace}/{base_key}"


def workspace_from_key(blob_name: str, base_key: str, *, prefix: str) -> str | None:
    """Invert :func:`state_key` for a listed blob, or return None if it is not a state blob."""

    head = f"{prefix}/"
    tail = f"/{base_key}"
    if not blob_name.startswith(head) or not blob_name.endswith(tail):
        return None
    candidate = blob_name[len(head) : len(blob_name) - len(tail)]
    if not candidate or candidate == DEFAULT_WORKSPACE or "/" in candidate:
        return None
    if not _WORKSPACE_PATTERN.match(candidate):
        return None
    return candidate


# Timestamp segment written by the store: %Y%m%dT%H%M%S%fZ.
_SNAPSHOT_SUFFIX = re.compile(r"\.\d{8}T\d{12}Z\.backup")


def snapshot_key(key: str, timestamp: str) -> str:
    return f"{key}.{timestamp}.backup"


def is_snapshot_of(blob_name: str, key: str) -> bool:
    """True when ``blob_name`` is a backup of exactly ``key``."""

    if not blob_name.startswith(key):
        return False
    return _SNAPSHOT_SUFFIX.fullmatch(blob_name, len(key)) is not None


__all__ = [
    "DEFAULT_WORKSPACE",
    "is_snapshot_of",
    "snapshot_key",
    "state_key",
    "validate_workspace",
    "workspace_from_key",
]
