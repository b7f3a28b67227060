"""Immutable domain models with strict validation and deterministic serialization."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import Final, NoReturn

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_MESSAGE = 8192


class Priority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is more important."""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK: Final[dict[Priority, int]] = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
}


class FileRole(StrEnum):
    EDIT_TARGET = "edit-target"
    REFERENCE = "reference"


class ExtractionLevel(StrEnum):
    FULL = "full"
    SIGNATURES = "signatures"
    TRUNCATED = "truncated"
    SUMMARY = "summary"
    EXCLUDED = "excluded"

    @property
    def fidelity(self) -> int:
        """Higher is closer to the original text."""

        return _FIDELITY[self]


_FIDELITY: Final[dict[ExtractionLevel, int]] = {
    ExtractionLevel.FULL: 4,
    ExtractionLevel.SIGNATURES: 3,
    ExtractionLevel.TRUNCATED: 2,
    ExtractionLevel.SUMMARY: 1,
    ExtractionLevel.EXCLUDED: 0,
}

EXTRACTION_ORDER: Final[tuple[ExtractionLevel, ...]] = (
    ExtractionLevel.FULL,
    ExtractionLevel.SIGNATURES,
    ExtractionLevel.TRUNCATED,
    ExtractionLevel.SUMMARY,
)


class EditAction(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    EDIT = "edit"


class FailurePhase(StrEnum):
    PREPARATION = "preparation"
    CODE_GENERATION = "code_generation"
    FILE_OPERATION = "file_operation"
    COMPILATION = "compilation"
    VALIDATION = "validation"
    INFRASTRUCTURE = "infrastructure"


class FailureCode(StrEnum):
    PREP_INSUFFICIENT_CONTEXT = "prep_insufficient_context"
    PREP_WRONG_FILES = "prep_wrong_files"
    PREP_MISSING_DEPENDENCIES = "prep_missing_dependencies"
    PREP_ABORTED_BY_USER = "prep_aborted_by_user"

    CODEGEN_NO_OUTPUT = "codegen_no_output"
    CODEGEN_INVALID_FORMAT = "codegen_invalid_format"
    CODEGEN_TOOL_NOT_CALLED = "codegen_tool_not_called"
    CODEGEN_WRONG_ACTION = "codegen_wrong_action"
    CODEGEN_TIMEOUT = "codegen_timeout"

    FILE_NOT_FOUND = "file_not_found"
    FILE_WRITE_ERROR = "file_write_error"
    FILE_EDIT_NO_MATCH = "file_edit_no_match"
    FILE_PERMISSION_ERROR = "file_permission_error"

    COMPILE_SYNTAX_ERROR = "compile_syntax_error"
    COMPILE_TYPE_ERROR = "compile_type_error"
    COMPILE_IMPORT_ERROR = "compile_import_error"
    COMPILE_MODULE_NOT_FOUND = "compile_module_not_found"

    VALIDATION_TEST_FAILED = "validation_test_failed"
    VALIDATION_NOT_RUN = "validation_not_run"
    VALIDATION_TIMEOUT = "validation_timeout"

    INFRA_API_ERROR = "infra_api_error"
    INFRA_TIMEOUT = "infra_timeout"
    INFRA_NETWORK_ERROR = "infra_network_error"
    INFRA_OUT_OF_MEMORY = "infra_out_of_memory"
    INFRA_UNKNOWN = "infra_unknown"

    @property
    def phase(self) -> FailurePhase:
        return FAILURE_CATALOG[self].phase

    @property
    def default_recoverable(self) -> bool:
        return FAILURE_CATALOG[self].recoverable

    @property
    def default_fix(self) -> str:
        return FAILURE_CATALOG[self].suggested_fix


@dataclass(frozen=True, slots=True)
class FailureCodeInfo:
    phase: FailurePhase
    recoverable: bool
    suggested_fix: str


_P = FailurePhase
FAILURE_CATALOG: Final[dict[FailureCode, FailureCodeInfo]] = {
    FailureCode.PREP_INSUFFICIENT_CONTEXT: FailureCodeInfo(
        _P.PREPARATION, False, "Increase the context budget or reduce the edit-target set"
    ),
    FailureCode.PREP_WRONG_FILES: FailureCodeInfo(
        _P.PREPARATION, False, "Re-run file discovery with the correct edit targets"
    ),
    FailureCode.PREP_MISSING_DEPENDENCIES: FailureCodeInfo(
        _P.PREPARATION, False, "Install project dependencies before running the task"
    ),
    FailureCode.PREP_ABORTED_BY_USER: FailureCodeInfo(
        _P.PREPARATION, False, "Revise the task description and resubmit"
    ),
    FailureCode.CODEGEN_NO_OUTPUT: FailureCodeInfo(
        _P.CODE_GENERATION, True, "Retry generation with a narrower task description"
    ),
    FailureCode.CODEGEN_INVALID_FORMAT: FailureCodeInfo(
        _P.CODE_GENERATION, False, "Return a response matching the submit_code_changes schema"
    ),
    FailureCode.CODEGEN_TOOL_NOT_CALLED: FailureCodeInfo(
        _P.CODE_GENERATION, False, "Call submit_code_changes with the file changes"
    ),
    FailureCode.CODEGEN_WRONG_ACTION: FailureCodeInfo(
        _P.CODE_GENERATION,
        False,
        "Use edit with search/replace for files that were not delivered in full",
    ),
    FailureCode.CODEGEN_TIMEOUT: FailureCodeInfo(
        _P.CODE_GENERATION, False, "Reduce the context size or raise the generation timeout"
    ),
    FailureCode.FILE_NOT_FOUND: FailureCodeInfo(
        _P.FILE_OPERATION, True, "Check that the file path exists before editing"
    ),
    FailureCode.FILE_WRITE_ERROR: FailureCodeInfo(
        _P.FILE_OPERATION, True, "Check free disk space and file locks"
    ),
    FailureCode.FILE_EDIT_NO_MATCH: FailureCodeInfo(
        _P.FILE_OPERATION, True, "Provide more context for exact text matching"
    ),
    FailureCode.FILE_PERMISSION_ERROR: FailureCodeInfo(
        _P.FILE_OPERATION, False, "Check file permissions on the target path"
    ),
    FailureCode.COMPILE_SYNTAX_ERROR: FailureCodeInfo(
        _P.COMPILATION, True, "Fix the syntax error at the reported location"
    ),
    FailureCode.COMPILE_TYPE_ERROR: FailureCodeInfo(
        _P.COMPILATION, True, "Fix type mismatch"
    ),
    FailureCode.COMPILE_IMPORT_ERROR: FailureCodeInfo(
        _P.COMPILATION, True, "Add missing import"
    ),
    FailureCode.COMPILE_MODULE_NOT_FOUND: FailureCodeInfo(
        _P.COMPILATION, True, "Ensure dependencies are installed"
    ),
    FailureCode.VALIDATION_TEST_FAILED: FailureCodeInfo(
        _P.VALIDATION, True, "Fix the failing checks reported by the validator"
    ),
    FailureCode.VALIDATION_NOT_RUN: FailureCodeInfo(
        _P.VALIDATION, False, "Configure a check command for this project"
    ),
    FailureCode.VALIDATION_TIMEOUT: FailureCodeInfo(
        _P.VALIDATION, False, "Raise the validation timeout or narrow the check scope"
    ),
    FailureCode.INFRA_API_ERROR: FailureCodeInfo(
        _P.INFRASTRUCTURE, False, "Retry after the provider API recovers"
    ),
    FailureCode.INFRA_TIMEOUT: FailureCodeInfo(
        _P.INFRASTRUCTURE, False, "Retry with a longer task deadline"
    ),
    FailureCode.INFRA_NETWORK_ERROR: FailureCodeInfo(
        _P.INFRASTRUCTURE, False, "Check network connectivity"
    ),
    FailureCode.INFRA_OUT_OF_MEMORY: FailureCodeInfo(
        _P.INFRASTRUCTURE, False, "Reduce the context size or raise the memory limit"
    ),
    FailureCode.INFRA_UNKNOWN: FailureCodeInfo(
        _P.INFRASTRUCTURE, False, "Add classification for this error pattern"
    ),
}
del _P

HEALABLE_PHASES: Final[frozenset[FailurePhase]] = frozenset(
    {FailurePhase.FILE_OPERATION, FailurePhase.COMPILATION}
)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _normalize_rel_path(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    cleaned = value.strip().replace("\\", "/")
    if not cleaned:
        _fail(path, "must not be empty")
    posix = PurePosixPath(cleaned)
    if posix.is_absolute():
        _fail(path, f"must be relative: {value!r}")
    if any(part == ".." for part in posix.parts):
        _fail(path, f"must not traverse parent directories: {value!r}")
    return posix.as_posix()


def _non_negative(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if value < 0:
        _fail(path, "must be >= 0")
    return value


@dataclass(frozen=True, slots=True)
class FileCandidate:
    """A repository file proposed for the generation context."""

    path: str
    size: int
    priority: Priority = Priority.MEDIUM
    role: FileRole = FileRole.REFERENCE
    content: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _normalize_rel_path(self.path, "FileCandidate.path"))
        object.__setattr__(self, "size", _non_negative(self.size, "FileCandidate.size"))
        object.__setattr__(self, "priority", Priority(self.priority))
        object.__setattr__(self, "role", FileRole(self.role))

    @property
    def is_edit_target(self) -> bool:
        return self.role is FileRole.EDIT_TARGET

    def with_content(self, content: str) -> FileCandidate:
        return FileCandidate(
            path=self.path,
            size=len(content),
            priority=self.priority,
            role=self.role,
            content=content,
        )


@dataclass(frozen=True, slots=True)
class ExtractedFile:
    """File content reduced to one extraction level, produced fresh per request."""

    path: str
    content: str
    level: ExtractionLevel
    tokens: int
    role: FileRole = FileRole.REFERENCE
    priority: Priority = Priority.MEDIUM

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", ExtractionLevel(self.level))
        object.__setattr__(self, "tokens", _non_negative(self.tokens, "ExtractedFile.tokens"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "path": self.path,
            "level": self.level.value,
            "tokens": self.tokens,
            "role": self.role.value,
            "priority": self.priority.value,
        }


@dataclass(frozen=True, slots=True)
class FileAllocation:
    """Budget decision for one candidate."""

    path: str
    role: FileRole
    priority: Priority
    slice_tokens: int
    full_tokens: int
    level: ExtractionLevel
    tokens: int
    forced_full: bool = False

    @property
    def delivered(self) -> bool:
        return self.level is not ExtractionLevel.EXCLUDED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "path": self.path,
            "role": self.role.value,
            "priority": self.priority.value,
            "slice_tokens": self.slice_tokens,
            "full_tokens": self.full_tokens,
            "level": self.level.value,
            "tokens": self.tokens,
            "forced_full": self.forced_full,
        }


@dataclass(frozen=True, slots=True)
class BudgetPlan:
    """Per-file allocation of a token budget.

    The delivered token sum never exceeds ``total_tokens - output_reserve``.
    """

    total_tokens: int
    output_reserve: int
    high_cap: int
    medium_cap: int
    low_cap: int
    edit_target_tokens: int
    allocations: tuple[FileAllocation, ...] = ()

    def __post_init__(self) -> None:
        _non_negative(self.total_tokens, "BudgetPlan.total_tokens")
        _non_negative(self.output_reserve, "BudgetPlan.output_reserve")
        if self.output_reserve > self.total_tokens:
            _fail("BudgetPlan.output_reserve", "must not exceed total_tokens")
        if self.allocated_tokens > self.input_budget:
            _fail(
                "BudgetPlan.allocations",
                f"allocated {self.allocated_tokens} tokens exceeds input budget "
                f"{self.input_budget}",
            )

    @property
    def input_budget(self) -> int:
        return self.total_tokens - self.output_reserve

    @property
    def allocated_tokens(self) -> int:
        return sum(item.tokens for item in self.allocations if item.delivered)

    @property
    def delivered_levels(self) -> dict[str, ExtractionLevel]:
        return {item.path: item.level for item in self.allocations}

    @property
    def excluded_paths(self) -> tuple[str, ...]:
        return tuple(sorted(item.path for item in self.allocations if not item.delivered))

    def allocation_for(self, path: str) -> FileAllocation | None:
        for item in self.allocations:
            if item.path == path:
                return item
        return None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total_tokens": self.total_tokens,
            "output_reserve": self.output_reserve,
            "caps": {
                "edit_targets": self.edit_target_tokens,
                "high": self.high_cap,
                "medium": self.medium_cap,
                "low": self.low_cap,
            },
            "allocated_tokens": self.allocated_tokens,
            "allocations": [item.to_dict() for item in self.allocations],
        }


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One compiler or type-checker finding."""

    file: str
    line: int
    code: str
    message: str
    column: int = 0
    severity: str = "error"

    @property
    def fingerprint(self) -> tuple[str, str, str]:
        # Line numbers shift when earlier code changes; match on the rest.
        return (self.file, self.code, self.message)

    def render(self) -> str:
        if self.column:
            location = f"{self.file}({self.line},{self.column})"
        else:
            location = f"{self.file}:{self.line}"
        code = f" {self.code}" if self.code else ""
        return f"{location}: {self.severity}{code}: {self.message}"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of one check-command run compared against the baseline."""

    passed: bool
    raw_output: str = ""
    diagnostics: tuple[Diagnostic, ...] = ()
    new_diagnostics: tuple[Diagnostic, ...] = ()
    baseline_error_count: int = 0
    exit_code: int | None = None
    skipped: bool = False
    timed_out: bool = False
    command: tuple[str, ...] = ()
    error: str | None = None

    @property
    def ran(self) -> bool:
        """False when the check was skipped or could not be started."""

        return not self.skipped and self.error is None

    @property
    def error_count(self) -> int:
        return sum(1 for item in self.diagnostics if item.severity == "error")

    @property
    def new_error_count(self) -> int:
        return sum(1 for item in self.new_diagnostics if item.severity == "error")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "passed": self.passed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "exit_code": self.exit_code,
            "command": list(self.command),
            "error": self.error,
            "baseline_error_count": self.baseline_error_count,
            "error_count": self.error_count,
            "new_diagnostics": [item.to_dict() for item in self.new_diagnostics],
        }


@dataclass(frozen=True, slots=True)
class StructuredFailure:
    """Closed (phase, code) classification of a failure with a remediation hint."""

    phase: FailurePhase
    code: FailureCode
    message: str
    details: Mapping[str, JSONValue] = field(default_factory=dict)
    recoverable: bool = False
    suggested_fix: str | None = None

    def __post_init__(self) -> None:
        phase = FailurePhase(self.phase)
        code = FailureCode(self.code)
        if code.phase is not phase:
            _fail("StructuredFailure.code", f"{code.value} does not belong to phase {phase.value}")
        if not isinstance(self.message, str) or not self.message.strip():
            _fail("StructuredFailure.message", "must be a non-empty string")
        object.__setattr__(self, "phase", phase)
        object.__setattr__(self, "code", code)
        object.__setattr__(self, "message", self.message.strip()[:_MAX_MESSAGE])
        object.__setattr__(self, "details", dict(self.details))

    @classmethod
    def from_code(
        cls,
        code: FailureCode | str,
        message: str,
        *,
        details: Mapping[str, JSONValue] | None = None,
        recoverable: bool | None = None,
        suggested_fix: str | None = None,
    ) -> StructuredFailure:
        """Build a failure using catalog defaults for phase, recoverability and fix."""

        resolved = FailureCode(code)
        return cls(
            phase=resolved.phase,
            code=resolved,
            message=message,
            details=dict(details or {}),
            recoverable=resolved.default_recoverable if recoverable is None else recoverable,
            suggested_fix=suggested_fix if suggested_fix is not None else resolved.default_fix,
        )

    @property
    def label(self) -> str:
        return f"{self.phase.value}:{self.code.value}"

    @property
    def healable(self) -> bool:
        return self.recoverable and self.phase in HEALABLE_PHASES

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "phase": self.phase.value,
            "code": self.code.value,
            "message": self.message,
            "details": {key: self.details[key] for key in sorted(self.details)},
            "recoverable": self.recoverable,
            "suggested_fix": self.suggested_fix,
        }


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """One code-modification request."""

    task_id: str
    description: str
    project_root: Path
    candidates: tuple[FileCandidate, ...] = ()
    patterns: str = ""
    deadline_seconds: float | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.task_id, str) or not self.task_id.strip():
            _fail("TaskSpec.task_id", "must be a non-empty string")
        if not isinstance(self.description, str) or not self.description.strip():
            _fail("TaskSpec.description", "must be a non-empty string")
        object.__setattr__(self, "project_root", Path(self.project_root))
        object.__setattr__(self, "candidates", tuple(self.candidates))
        seen: set[str] = set()
        for candidate in self.candidates:
            if candidate.path in seen:
                _fail("TaskSpec.candidates", f"duplicate candidate path {candidate.path!r}")
            seen.add(candidate.path)
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            _fail("TaskSpec.deadline_seconds", "must be > 0 when set")

    @property
    def edit_targets(self) -> tuple[str, ...]:
        return tuple(sorted(item.path for item in self.candidates if item.is_edit_target))


@dataclass(frozen=True, slots=True)
class TaskContext:
    """Budgeted, extracted repository slice prepared for one execution."""

    task: TaskSpec
    plan: BudgetPlan
    files: tuple[ExtractedFile, ...]

    @property
    def delivered_levels(self) -> dict[str, ExtractionLevel]:
        return {item.path: item.level for item in self.files}

    @property
    def total_tokens(self) -> int:
        return sum(item.tokens for item in self.files)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Final outcome of one task execution."""

    task_id: str
    success: bool
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()
    files_edited: tuple[str, ...] = ()
    validation: ValidationResult | None = None
    self_heal_attempts: int = 0
    self_heal_succeeded: bool = False
    failure: StructuredFailure | None = None
    elapsed_seconds: float = 0.0
    explanation: str = ""

    def __post_init__(self) -> None:
        if not self.success and self.failure is None:
            _fail("ExecutionResult.failure", "a failed result must carry a StructuredFailure")
        _non_negative(self.self_heal_attempts, "ExecutionResult.self_heal_attempts")
        for name in ("files_created", "files_modified", "files_edited"):
            object.__setattr__(self, name, tuple(sorted(set(getattr(self, name)))))

    @property
    def touched_files(self) -> tuple[str, ...]:
        return tuple(sorted({*self.files_created, *self.files_modified, *self.files_edited}))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "files_edited": list(self.files_edited),
            "validation": None if self.validation is None else self.validation.to_dict(),
            "self_heal_attempts": self.self_heal_attempts,
            "self_heal_succeeded": self.self_heal_succeeded,
            "failure": None if self.failure is None else self.failure.to_dict(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "explanation": self.explanation,
        }


__all__ = [
    "EXTRACTION_ORDER",
    "FAILURE_CATALOG",
    "HEALABLE_PHASES",
    "BudgetPlan",
    "Diagnostic",
    "EditAction",
    "ExecutionResult",
    "ExtractedFile",
    "ExtractionLevel",
    "FailureCode",
    "FailureCodeInfo",
    "FailurePhase",
    "FileAllocation",
    "FileCandidate",
    "FileRole",
    "JSONScalar",
    "JSONValue",
    "Priority",
    "StructuredFailure",
    "TaskContext",
    "TaskSpec",
    "ValidationResult",
]
