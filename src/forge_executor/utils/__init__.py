"""Shared filesystem and hashing helpers."""

from __future__ import annotations

from forge_executor.utils.fs import (
    PathEscapeError,
    atomic_write,
    is_within,
    read_text_if_exists,
    resolve_within,
)
from forge_executor.utils.hashing import sha256_bytes, sha256_text, snapshot_digest

__all__ = [
    "PathEscapeError",
    "atomic_write",
    "is_within",
    "read_text_if_exists",
    "resolve_within",
    "sha256_bytes",
    "sha256_text",
    "snapshot_digest",
]
