"""Integration plane: applying validated edit operations to the working tree."""

from __future__ import annotations

from forge_executor.integration_plane.edit_applier import (
    ApplyReport,
    EditApplier,
    EditApplyError,
    FileApplyResult,
    NonUniquePolicy,
    apply_search_replace,
)

__all__ = [
    "ApplyReport",
    "EditApplier",
    "EditApplyError",
    "FileApplyResult",
    "NonUniquePolicy",
    "apply_search_replace",
]
