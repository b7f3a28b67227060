"""Domain value types shared by every executor plane."""

from __future__ import annotations

from forge_executor.domain.models import (
    BudgetPlan,
    Diagnostic,
    EditAction,
    ExecutionResult,
    ExtractedFile,
    ExtractionLevel,
    FailureCode,
    FailurePhase,
    FileAllocation,
    FileCandidate,
    FileRole,
    Priority,
    StructuredFailure,
    TaskContext,
    TaskSpec,
    ValidationResult,
)

__all__ = [
    "BudgetPlan",
    "Diagnostic",
    "EditAction",
    "ExecutionResult",
    "ExtractedFile",
    "ExtractionLevel",
    "FailureCode",
    "FailurePhase",
    "FileAllocation",
    "FileCandidate",
    "FileRole",
    "Priority",
    "StructuredFailure",
    "TaskContext",
    "TaskSpec",
    "ValidationResult",
]
