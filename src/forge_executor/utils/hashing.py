"""Deterministic SHA-256 helpers for text payloads and file snapshots."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping

__all__ = [
    "sha256_bytes",
    "sha256_text",
    "snapshot_digest",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def snapshot_digest(files: Mapping[str, str]) -> str:
    """Digest a ``path -> content`` mapping independent of insertion order."""

    digest = hashlib.sha256()
    for path in sorted(files):
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(sha256_text(files[path]).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()
