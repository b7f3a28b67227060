"""
Unit tests for domain models and the failure catalog.

Coverage:
- Every failure code has a fixed phase, recoverability and fix.
- Model validation rejects malformed values with dotted paths.
- Budget plan accounting and deterministic serialization.
- Error types carry their structured failures.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from forge_executor.domain.errors import (
    BudgetCapacityError,
    ForgeError,
    GenerationTimeoutError,
    ProtocolViolationError,
    TaskAbortedError,
)
from forge_executor.domain.models import (
    FAILURE_CATALOG,
    BudgetPlan,
    Diagnostic,
    ExecutionResult,
    ExtractionLevel,
    FailureCode,
    FailurePhase,
    FileAllocation,
    FileCandidate,
    FileRole,
    Priority,
    StructuredFailure,
    TaskSpec,
)


def _allocation(path: str, tokens: int, level: ExtractionLevel) -> FileAllocation:
    return FileAllocation(
        path=path,
        role=FileRole.REFERENCE,
        priority=Priority.MEDIUM,
        slice_tokens=tokens,
        full_tokens=tokens,
        level=level,
        tokens=tokens,
    )


def test_catalog_covers_every_code_with_a_phase_prefix() -> None:
    prefixes = {
        FailurePhase.PREPARATION: "prep_",
        FailurePhase.CODE_GENERATION: "codegen_",
        FailurePhase.FILE_OPERATION: "file_",
        FailurePhase.COMPILATION: "compile_",
        FailurePhase.VALIDATION: "validation_",
        FailurePhase.INFRASTRUCTURE: "infra_",
    }

    assert set(FAILURE_CATALOG) == set(FailureCode)
    for code in FailureCode:
        assert code.value.startswith(prefixes[code.phase])
        assert code.default_fix


@pytest.mark.parametrize(
    ("code", "healable"),
    [
        (FailureCode.FILE_EDIT_NO_MATCH, True),
        (FailureCode.COMPILE_TYPE_ERROR, True),
        (FailureCode.FILE_PERMISSION_ERROR, False),
        (FailureCode.CODEGEN_NO_OUTPUT, False),
        (FailureCode.VALIDATION_TEST_FAILED, False),
        (FailureCode.INFRA_TIMEOUT, False),
    ],
)
def test_only_recoverable_file_and_compile_failures_are_healable(
    code: FailureCode, healable: bool
) -> None:
    assert StructuredFailure.from_code(code, "boom").healable is healable


def test_structured_failure_rejects_a_code_from_another_phase() -> None:
    with pytest.raises(ValueError, match="does not belong to phase"):
        StructuredFailure(
            phase=FailurePhase.COMPILATION,
            code=FailureCode.FILE_NOT_FOUND,
            message="missing",
        )


def test_structured_failure_serializes_with_sorted_details() -> None:
    failure = StructuredFailure.from_code(
        "compile_type_error", "  Type mismatch  ", details={"z": 1, "a": [1, 2]}
    )

    assert failure.label == "compilation:compile_type_error"
    assert failure.message == "Type mismatch"
    assert failure.suggested_fix == "Fix type mismatch"
    assert json.dumps(failure.to_dict()) == json.dumps(
        {
            "phase": "compilation",
            "code": "compile_type_error",
            "message": "Type mismatch",
            "details": {"a": [1, 2], "z": 1},
            "recoverable": True,
            "suggested_fix": "Fix type mismatch",
        }
    )


def test_empty_failure_message_is_rejected() -> None:
    with pytest.raises(ValueError, match="StructuredFailure.message"):
        StructuredFailure.from_code(FailureCode.INFRA_UNKNOWN, "   ")


@pytest.mark.parametrize(
    ("path", "fragment"),
    [
        ("", "must not be empty"),
        ("/etc/passwd", "must be relative"),
        ("src/../../secret.ts", "must not traverse"),
    ],
)
def test_file_candidate_paths_must_stay_relative(path: str, fragment: str) -> None:
    with pytest.raises(ValueError, match=fragment):
        FileCandidate(path, 10)


def test_file_candidate_normalizes_path_and_enums() -> None:
    candidate = FileCandidate(
        "src\\api\\routes.ts", 10, "high", "edit-target"  # type: ignore[arg-type]
    )

    assert candidate.path == "src/api/routes.ts"
    assert candidate.priority is Priority.HIGH
    assert candidate.is_edit_target
    assert candidate.with_content("abc").size == 3


def test_negative_file_size_is_rejected() -> None:
    with pytest.raises(ValueError, match="FileCandidate.size"):
        FileCandidate("a.ts", -1)


def test_task_spec_validation(tmp_path: Path) -> None:
    candidates = (
        FileCandidate("b.ts", 1, role=FileRole.EDIT_TARGET),
        FileCandidate("a.ts", 1, role=FileRole.EDIT_TARGET),
        FileCandidate("c.ts", 1),
    )
    task = TaskSpec("t-1", "Rename the helper", str(tmp_path), candidates)  # type: ignore[arg-type]

    assert task.project_root == tmp_path
    assert task.edit_targets == ("a.ts", "b.ts")
    with pytest.raises(ValueError, match="TaskSpec.task_id"):
        TaskSpec(" ", "Rename the helper", tmp_path)
    with pytest.raises(ValueError, match="duplicate candidate path"):
        TaskSpec("t-1", "Rename", tmp_path, (FileCandidate("a.ts", 1), FileCandidate("a.ts", 2)))
    with pytest.raises(ValueError, match="TaskSpec.deadline_seconds"):
        TaskSpec("t-1", "Rename", tmp_path, deadline_seconds=0)


def test_budget_plan_accounts_only_delivered_files() -> None:
    plan = BudgetPlan(
        total_tokens=1_000,
        output_reserve=200,
        high_cap=640,
        medium_cap=128,
        low_cap=0,
        edit_target_tokens=0,
        allocations=(
            _allocation("a.ts", 500, ExtractionLevel.FULL),
            _allocation("b.ts", 300, ExtractionLevel.EXCLUDED),
        ),
    )

    assert plan.input_budget == 800
    assert plan.allocated_tokens == 500
    assert plan.excluded_paths == ("b.ts",)
    assert plan.delivered_levels == {"a.ts": ExtractionLevel.FULL, "b.ts": ExtractionLevel.EXCLUDED}
    assert plan.allocation_for("missing.ts") is None
    assert plan.to_dict()["caps"] == {"edit_targets": 0, "high": 640, "medium": 128, "low": 0}


def test_budget_plan_rejects_over_allocation() -> None:
    with pytest.raises(ValueError, match="exceeds input budget"):
        BudgetPlan(
            total_tokens=1_000,
            output_reserve=200,
            high_cap=0,
            medium_cap=0,
            low_cap=0,
            edit_target_tokens=0,
            allocations=(_allocation("a.ts", 900, ExtractionLevel.FULL),),
        )


def test_diagnostic_render_and_fingerprint() -> None:
    located = Diagnostic("src/a.ts", 4, "TS2304", "Cannot find name 'x'.", column=7)
    plain = Diagnostic("pkg/a.py", 4, "", "Name 'x' is not defined")

    assert located.render() == "src/a.ts(4,7): error TS2304: Cannot find name 'x'."
    assert plain.render() == "pkg/a.py:4: error: Name 'x' is not defined"
    assert located.fingerprint == ("src/a.ts", "TS2304", "Cannot find name 'x'.")


def test_execution_result_requires_a_failure_when_unsuccessful() -> None:
    with pytest.raises(ValueError, match="ExecutionResult.failure"):
        ExecutionResult(task_id="t-1", success=False)


def test_execution_result_deduplicates_and_sorts_touched_files() -> None:
    result = ExecutionResult(
        task_id="t-1",
        success=True,
        files_created=("b.ts", "a.ts", "a.ts"),
        files_edited=("c.ts",),
        elapsed_seconds=1.23456,
    )

    assert result.files_created == ("a.ts", "b.ts")
    assert result.touched_files == ("a.ts", "b.ts", "c.ts")
    assert result.to_dict()["elapsed_seconds"] == 1.235


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (BudgetCapacityError("too big"), FailureCode.PREP_INSUFFICIENT_CONTEXT),
        (GenerationTimeoutError("slow"), FailureCode.CODEGEN_TIMEOUT),
        (TaskAbortedError("no"), FailureCode.PREP_ABORTED_BY_USER),
        (ForgeError("??"), FailureCode.INFRA_UNKNOWN),
        (
            ForgeError("bad files", code=FailureCode.PREP_WRONG_FILES),
            FailureCode.PREP_WRONG_FILES,
        ),
    ],
)
def test_errors_carry_structured_failures(error: ForgeError, code: FailureCode) -> None:
    assert error.failure.code is code
    assert error.failure.message == str(error)


def test_protocol_violation_keeps_its_reason_in_details() -> None:
    error = ProtocolViolationError(
        "NO_TOOL_USE_IN_RESPONSE",
        reason="no_tool_use",
        code=FailureCode.CODEGEN_TOOL_NOT_CALLED,
        details={"block_types": ["text"]},
    )

    assert error.reason == "no_tool_use"
    assert error.failure.details == {"reason": "no_tool_use", "block_types": ["text"]}
    assert error.failure.phase is FailurePhase.CODE_GENERATION
