"""Learning records emitted after each execution, and the sinks that receive them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import structlog

from forge_executor.domain.models import (
    ExecutionResult,
    JSONValue,
    StructuredFailure,
    TaskContext,
    TaskSpec,
)
from forge_executor.utils.hashing import snapshot_digest


class LearningKind(StrEnum):
    INSIGHT = "insight"
    CORRECTION = "correction"
    PATTERN = "pattern"
    WARNING = "warning"


class Outcome(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Learning:
    kind: LearningKind
    content: str
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {"type": self.kind.value, "content": self.content, "tags": list(self.tags)}


@dataclass(frozen=True, slots=True)
class LearningRecord:
    """Prediction-versus-actual delta for one task, handed to the learning sink."""

    task_id: str
    outcome: Outcome
    predicted_files: tuple[str, ...]
    actual_files: tuple[str, ...]
    missed_files: tuple[str, ...]
    unnecessary_files: tuple[str, ...]
    result: ExecutionResult
    context_digest: str | None = None
    learnings: tuple[Learning, ...] = field(default_factory=tuple)

    @property
    def failure(self) -> StructuredFailure | None:
        return self.result.failure

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "outcome": self.outcome.value,
            "accuracy": {
                "predicted": list(self.predicted_files),
                "actual": list(self.actual_files),
                "missed": list(self.missed_files),
                "unnecessary": list(self.unnecessary_files),
            },
            "context_digest": self.context_digest,
            "result": self.result.to_dict(),
            "learnings": [item.to_dict() for item in self.learnings],
        }


@runtime_checkable
class LearningSink(Protocol):
    def record(self, record: LearningRecord) -> None: ...


class LoggingLearningSink:
    """Default sink: one structured log event per record, nothing persisted."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def record(self, record: LearningRecord) -> None:
        self._logger.info(
            "learning_record_emitted",
            task_id=record.task_id,
            outcome=record.outcome.value,
            missed=list(record.missed_files),
            unnecessary=list(record.unnecessary_files),
            failure=None if record.failure is None else record.failure.label,
            learnings=len(record.learnings),
        )


class CollectingLearningSink:
    """Keeps records in memory; useful for callers that batch their own storage."""

    def __init__(self) -> None:
        self.records: list[LearningRecord] = []

    def record(self, record: LearningRecord) -> None:
        self.records.append(record)


def classify_outcome(result: ExecutionResult) -> Outcome:
    if result.success:
        return Outcome.SUCCESS
    if result.touched_files:
        return Outcome.PARTIAL
    return Outcome.FAILED


def build_learning_record(
    task: TaskSpec,
    result: ExecutionResult,
    *,
    context: TaskContext | None = None,
) -> LearningRecord:
    predicted = set(task.edit_targets)
    actual = set(result.touched_files)
    outcome = classify_outcome(result)
    missed = tuple(sorted(actual - predicted))
    unnecessary = tuple(sorted(predicted - actual))

    digest = None
    if context is not None:
        digest = snapshot_digest({item.path: item.content for item in context.files})

    return LearningRecord(
        task_id=task.task_id,
        outcome=outcome,
        predicted_files=tuple(sorted(predicted)),
        actual_files=tuple(sorted(actual)),
        missed_files=missed,
        unnecessary_files=unnecessary,
        result=result,
        context_digest=digest,
        learnings=_learnings(result, outcome, missed, unnecessary),
    )


def _learnings(
    result: ExecutionResult,
    outcome: Outcome,
    missed: tuple[str, ...],
    unnecessary: tuple[str, ...],
) -> tuple[Learning, ...]:
    items: list[Learning] = []
    if result.success:
        items.append(
            Learning(
                LearningKind.INSIGHT,
                f"Task executed successfully. {len(result.files_created)} files created, "
                f"{len(result.files_modified)} modified, {len(result.files_edited)} edited.",
                ("success",),
            )
        )
    else:
        failure = result.failure
        detail = "unknown failure" if failure is None else f"{failure.label}: {failure.message}"
        items.append(
            Learning(LearningKind.CORRECTION, f"Task had issues: {detail}", (outcome.value,))
        )
        if failure is not None and failure.suggested_fix:
            items.append(
                Learning(LearningKind.WARNING, failure.suggested_fix, (failure.code.value,))
            )

    if result.self_heal_attempts:
        state = "recovered" if result.self_heal_succeeded else "did not recover"
        items.append(
            Learning(
                LearningKind.PATTERN,
                f"Self-heal {state} after {result.self_heal_attempts} attempt(s).",
                ("self-heal",),
            )
        )
    if missed:
        items.append(
            Learning(
                LearningKind.CORRECTION,
                f"Files changed but not predicted as edit targets: {', '.join(missed)}",
                ("prediction", "missed"),
            )
        )
    if unnecessary:
        items.append(
            Learning(
                LearningKind.WARNING,
                f"Predicted edit targets left untouched: {', '.join(unnecessary)}",
                ("prediction", "unnecessary"),
            )
        )
    return tuple(items)


__all__ = [
    "CollectingLearningSink",
    "Learning",
    "LearningKind",
    "LearningRecord",
    "LearningSink",
    "LoggingLearningSink",
    "Outcome",
    "build_learning_record",
    "classify_outcome",
]
