"""
forge-executor - filesystem utilities

File: src/forge_executor/utils/fs.py

Purpose
- Atomic single-step file writes and project-root containment checks for the
  edit applier and the context builder.

Functional requirements
- Atomic writes use a temp file in the destination directory, fsync, then
  ``os.replace``; a failed write never leaves a partial target behind.
- An existing target keeps its permission bits across the replace.
- Relative paths that resolve outside the project root are refused.
"""

from __future__ import annotations

import contextlib
import os
import stat
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "PathEscapeError",
    "atomic_write",
    "is_within",
    "read_text_if_exists",
    "resolve_within",
]


class PathEscapeError(ValueError):
    """Raised when a relative path resolves outside its root directory."""


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    Missing parent directories are created. The previous content stays intact
    if anything fails before the final ``os.replace``.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    previous_mode: int | None = None
    with contextlib.suppress(FileNotFoundError):
        previous_mode = stat.S_IMODE(target.stat().st_mode)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".forge-tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        if previous_mode is not None:
            os.chmod(temp_path, previous_mode)
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if ``child`` resolves inside resolved ``parent``."""

    resolved_parent = Path(parent).resolve()
    resolved_child = Path(child).resolve()
    try:
        resolved_child.relative_to(resolved_parent)
    except ValueError:
        return False
    return True


def resolve_within(root: PathLike, relative: str) -> Path:
    """Resolve ``relative`` against ``root`` and refuse escapes."""

    if not relative or not relative.strip():
        raise PathEscapeError("path must not be empty")
    if Path(relative).is_absolute():
        raise PathEscapeError(f"path must be relative to the project root: {relative!r}")
    root_path = Path(root).resolve()
    candidate = (root_path / relative).resolve()
    if not is_within(candidate, root_path):
        raise PathEscapeError(f"path escapes project root: {relative!r}")
    return candidate


def read_text_if_exists(
    path: PathLike, *, encoding: str = "utf-8", errors: str = "strict"
) -> str | None:
    """Return file text, or ``None`` when the file does not exist."""

    try:
        return Path(path).read_text(encoding=encoding, errors=errors)
    except FileNotFoundError:
        return None


def _fsync_directory(path: Path) -> None:
    # Not every platform supports fsync on directories.
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY
    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
