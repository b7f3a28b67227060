from __future__ import annotations

from pathlib import Path
from typing import Any

from forge_executor.domain.models import (
    BudgetPlan,
    ExecutionResult,
    ExtractedFile,
    ExtractionLevel,
    FailureCode,
    FileCandidate,
    FileRole,
    StructuredFailure,
    TaskContext,
    TaskSpec,
)
from forge_executor.knowledge_plane.feedback import (
    CollectingLearningSink,
    LearningKind,
    LearningSink,
    LoggingLearningSink,
    Outcome,
    build_learning_record,
    classify_outcome,
)


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def info(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))


def _task(tmp_path: Path) -> TaskSpec:
    return TaskSpec(
        task_id="t-9",
        description="Add a health endpoint",
        project_root=tmp_path,
        candidates=(
            FileCandidate("src/routes.ts", 0, role=FileRole.EDIT_TARGET),
            FileCandidate("src/app.ts", 0, role=FileRole.EDIT_TARGET),
            FileCandidate("src/db.ts", 0),
        ),
    )


def test_prediction_deltas_on_success(tmp_path: Path) -> None:
    result = ExecutionResult(
        task_id="t-9",
        success=True,
        files_created=("src/health.ts",),
        files_edited=("src/routes.ts",),
        self_heal_attempts=1,
        self_heal_succeeded=True,
    )

    record = build_learning_record(_task(tmp_path), result)

    assert record.outcome is Outcome.SUCCESS
    assert record.predicted_files == ("src/app.ts", "src/routes.ts")
    assert record.actual_files == ("src/health.ts", "src/routes.ts")
    assert record.missed_files == ("src/health.ts",)
    assert record.unnecessary_files == ("src/app.ts",)
    kinds = [item.kind for item in record.learnings]
    assert kinds == [
        LearningKind.INSIGHT,
        LearningKind.PATTERN,
        LearningKind.CORRECTION,
        LearningKind.WARNING,
    ]
    assert "Self-heal recovered after 1 attempt(s)." in record.learnings[1].content


def test_failed_record_carries_failure_and_fix(tmp_path: Path) -> None:
    failure = StructuredFailure.from_code(FailureCode.FILE_EDIT_NO_MATCH, "search text missing")
    result = ExecutionResult(task_id="t-9", success=False, failure=failure)

    record = build_learning_record(_task(tmp_path), result)

    assert record.outcome is Outcome.FAILED
    assert record.failure is failure
    assert record.learnings[0].kind is LearningKind.CORRECTION
    assert "file_operation:file_edit_no_match" in record.learnings[0].content
    assert record.learnings[1].content == failure.suggested_fix
    payload = record.to_dict()
    assert payload["outcome"] == "failed"
    accuracy = payload["accuracy"]
    assert isinstance(accuracy, dict)
    assert accuracy["unnecessary"] == ["src/app.ts", "src/routes.ts"]


def test_partial_outcome_when_files_changed_but_task_failed() -> None:
    failure = StructuredFailure.from_code(FailureCode.VALIDATION_TEST_FAILED, "checks failed")
    result = ExecutionResult(
        task_id="t", success=False, files_edited=("a.ts",), failure=failure
    )

    assert classify_outcome(result) is Outcome.PARTIAL


def test_context_digest_is_stable(tmp_path: Path) -> None:
    task = _task(tmp_path)
    context = TaskContext(
        task=task,
        plan=BudgetPlan(
            total_tokens=100,
            output_reserve=20,
            high_cap=0,
            medium_cap=0,
            low_cap=0,
            edit_target_tokens=0,
        ),
        files=(ExtractedFile("src/routes.ts", "x", ExtractionLevel.FULL, 1),),
    )
    result = ExecutionResult(task_id="t-9", success=True)

    first = build_learning_record(task, result, context=context)
    second = build_learning_record(task, result, context=context)

    assert first.context_digest is not None
    assert first.context_digest == second.context_digest
    assert build_learning_record(task, result).context_digest is None


def test_sinks_satisfy_the_protocol(tmp_path: Path) -> None:
    logger = _RecordingLogger()
    record = build_learning_record(
        _task(tmp_path), ExecutionResult(task_id="t-9", success=True)
    )
    collecting = CollectingLearningSink()
    logging_sink = LoggingLearningSink(logger=logger)

    collecting.record(record)
    logging_sink.record(record)

    assert isinstance(collecting, LearningSink)
    assert isinstance(logging_sink, LearningSink)
    assert collecting.records == [record]
    ((event, fields),) = logger.events
    assert event == "learning_record_emitted"
    assert fields["outcome"] == "success"
    assert fields["failure"] is None
