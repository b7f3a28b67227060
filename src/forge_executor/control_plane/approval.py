"""Human-approval hook consulted before any generation call."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final, Protocol, TypeAlias, runtime_checkable

import structlog

from forge_executor.domain.models import JSONValue, TaskSpec
from forge_executor.utils.fs import PathEscapeError, resolve_within


class TriggerKind(StrEnum):
    AMBIGUOUS_TARGET = "ambiguous_target"
    VAGUE_TASK = "vague_task"
    HIGH_RISK_OPERATION = "high_risk_operation"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Final[dict[Severity, int]] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

_NEW_THING_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(add|create|new|implement|introduce|scaffold|generate)\b", re.IGNORECASE
)
_ACTION_VERB_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(add|create|implement|fix|update|remove|delete|refactor|rename|move|change|build|write"
    r"|make|replace|extract|convert|migrate|introduce|support|handle)\b",
    re.IGNORECASE,
)
_HIGH_RISK_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(delete|drop|truncate|rm\s+-rf|auth\w*|password|credential\w*|secret\w*|payment\w*"
    r"|billing|migration)\b",
    re.IGNORECASE,
)
_MIN_TASK_WORDS: Final[int] = 3


@dataclass(frozen=True, slots=True)
class ApprovalTrigger:
    kind: TriggerKind
    severity: Severity
    reason: str
    details: dict[str, JSONValue] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "reason": self.reason,
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    """What the gate is asked to decide on."""

    task_id: str
    description: str
    triggers: tuple[ApprovalTrigger, ...]

    def __post_init__(self) -> None:
        if not self.triggers:
            raise ValueError("ApprovalRequest.triggers must be non-empty")

    @property
    def severity(self) -> Severity:
        return max((item.severity for item in self.triggers), key=lambda item: item.rank)

    @property
    def question(self) -> str:
        reasons = "; ".join(item.reason for item in self.triggers)
        return f"Proceed with task {self.task_id!r}? {reasons}"


class ResumeDecision(StrEnum):
    APPROVED = "approved"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class ResumeSignal:
    decision: ResumeDecision
    reason: str = ""

    @classmethod
    def approved(cls, reason: str = "") -> ResumeSignal:
        return cls(ResumeDecision.APPROVED, reason)

    @classmethod
    def aborted(cls, reason: str = "aborted by user") -> ResumeSignal:
        return cls(ResumeDecision.ABORTED, reason)

    @property
    def is_approved(self) -> bool:
        return self.decision is ResumeDecision.APPROVED


@runtime_checkable
class ApprovalGate(Protocol):
    async def wait_for_resume(self, request: ApprovalRequest) -> ResumeSignal: ...


@runtime_checkable
class ApprovalPolicy(Protocol):
    def triggers_for(self, task: TaskSpec) -> tuple[ApprovalTrigger, ...]: ...


TriggerCheck: TypeAlias = Callable[[TaskSpec], "ApprovalTrigger | None"]


def ambiguous_target_check(task: TaskSpec) -> ApprovalTrigger | None:
    """Edit targets that are missing on disk, in a task that does not create anything."""

    if _NEW_THING_RE.search(task.description):
        return None
    missing: list[str] = []
    for item in task.candidates:
        if not item.is_edit_target or item.content is not None:
            continue
        try:
            exists = resolve_within(task.project_root, item.path).is_file()
        except PathEscapeError:
            exists = False
        if not exists:
            missing.append(item.path)
    if not missing:
        return None
    return ApprovalTrigger(
        kind=TriggerKind.AMBIGUOUS_TARGET,
        severity=Severity.HIGH if len(missing) > 1 else Severity.MEDIUM,
        reason=f"edit target(s) not found: {', '.join(missing)}",
        details={"missing": list(missing)},
    )


def vague_task_check(task: TaskSpec) -> ApprovalTrigger | None:
    words = task.description.split()
    if len(words) >= _MIN_TASK_WORDS and _ACTION_VERB_RE.search(task.description):
        return None
    return ApprovalTrigger(
        kind=TriggerKind.VAGUE_TASK,
        severity=Severity.MEDIUM,
        reason="task description is too short or has no action verb",
        details={"words": len(words)},
    )


def high_risk_check(task: TaskSpec) -> ApprovalTrigger | None:
    hits = sorted({match.group(0).lower() for match in _HIGH_RISK_RE.finditer(task.description)})
    if not hits:
        return None
    return ApprovalTrigger(
        kind=TriggerKind.HIGH_RISK_OPERATION,
        severity=Severity.CRITICAL,
        reason=f"task mentions high-risk operations: {', '.join(hits)}",
        details={"keywords": list(hits)},
    )


DEFAULT_CHECKS: Final[tuple[TriggerCheck, ...]] = (ambiguous_target_check,)
ALL_CHECKS: Final[tuple[TriggerCheck, ...]] = (
    ambiguous_target_check,
    vague_task_check,
    high_risk_check,
)


class DefaultApprovalPolicy:
    """Runs trigger checks; triggers below ``min_severity`` are dropped."""

    def __init__(
        self,
        checks: Sequence[TriggerCheck] = DEFAULT_CHECKS,
        *,
        min_severity: Severity = Severity.LOW,
    ) -> None:
        self._checks = tuple(checks)
        self._min_severity = min_severity

    def triggers_for(self, task: TaskSpec) -> tuple[ApprovalTrigger, ...]:
        found = (check(task) for check in self._checks)
        return tuple(
            item
            for item in found
            if item is not None and item.severity.rank >= self._min_severity.rank
        )


class AutoApproveGate:
    """Approves every request; logs what it approved."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def wait_for_resume(self, request: ApprovalRequest) -> ResumeSignal:
        self._logger.info(
            "approval_auto_approved",
            task_id=request.task_id,
            severity=request.severity.value,
            triggers=[item.kind.value for item in request.triggers],
        )
        return ResumeSignal.approved("auto-approved")


class StaticDecisionGate:
    """Answers every request with one fixed signal and keeps the requests it saw."""

    def __init__(self, signal: ResumeSignal) -> None:
        self._signal = signal
        self.requests: list[ApprovalRequest] = []

    async def wait_for_resume(self, request: ApprovalRequest) -> ResumeSignal:
        self.requests.append(request)
        return self._signal


def policy_for_checks(names: Sequence[str]) -> DefaultApprovalPolicy:
    """Build a policy from trigger kind names, as written in configuration."""

    by_kind: dict[str, TriggerCheck] = {
        TriggerKind.AMBIGUOUS_TARGET.value: ambiguous_target_check,
        TriggerKind.VAGUE_TASK.value: vague_task_check,
        TriggerKind.HIGH_RISK_OPERATION.value: high_risk_check,
    }
    unknown = sorted(set(names) - set(by_kind))
    if unknown:
        raise ValueError(f"unknown approval trigger(s): {', '.join(unknown)}")
    return DefaultApprovalPolicy(tuple(by_kind[name] for name in names))


__all__ = [
    "ALL_CHECKS",
    "DEFAULT_CHECKS",
    "ApprovalGate",
    "ApprovalPolicy",
    "ApprovalRequest",
    "ApprovalTrigger",
    "AutoApproveGate",
    "DefaultApprovalPolicy",
    "ResumeDecision",
    "ResumeSignal",
    "Severity",
    "StaticDecisionGate",
    "TriggerCheck",
    "TriggerKind",
    "ambiguous_target_check",
    "high_risk_check",
    "policy_for_checks",
    "vague_task_check",
]
