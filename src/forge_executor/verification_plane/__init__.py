"""Verification plane: check-command execution, diagnostics and the validation gate."""

from __future__ import annotations

from forge_executor.verification_plane.command import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
)
from forge_executor.verification_plane.diagnostics import (
    format_diagnostics,
    new_since_baseline,
    parse_diagnostics,
)
from forge_executor.verification_plane.validation_gate import ValidationGate

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "ValidationGate",
    "format_diagnostics",
    "new_since_baseline",
    "parse_diagnostics",
]
