"""
forge-executor - self-heal loop

File: src/forge_executor/control_plane/self_heal.py

Purpose
- Bounded generate -> apply -> validate -> heal cycle.

What should be included in this file
- A pure transition function ``step(state, event) -> (state, effects)`` over
  an immutable ``HealState``.
- ``run_self_heal``: the async driver that interprets effects against an
  oracle, the edit applier and the validation gate.

Functional requirements
- GENERATING -> APPLYING -> VALIDATING -> SUCCEEDED, or HEALING -> (new
  generation) when attempts remain, or FAILED.
- At most ``max_attempts + 1`` generation calls per task.
- Follow-up attempts list the first ``max_diagnostics`` errors verbatim and may
  only touch files changed by earlier attempts; anything else is rejected as
  ``code_generation:codegen_wrong_action``.
- Only ``file_operation`` and ``compilation`` failures, and validation runs
  with new diagnostics, are healed. Preparation failures, protocol violations,
  validation timeouts and infrastructure failures end the loop.

Non-functional requirements
- ``step`` performs no I/O; every side effect is an effect value.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeAlias

import structlog

from forge_executor.constants import (
    DEFAULT_MAX_HEAL_ATTEMPTS,
    DEFAULT_MAX_HEAL_DIAGNOSTICS,
    DEFAULT_MAX_OUTPUT_TOKENS,
)
from forge_executor.domain.errors import ForgeError
from forge_executor.domain.models import (
    Diagnostic,
    ExtractedFile,
    ExtractionLevel,
    FailureCode,
    FailurePhase,
    FileRole,
    Priority,
    StructuredFailure,
    TaskContext,
    ValidationResult,
)
from forge_executor.integration_plane.edit_applier import ApplyReport, EditApplier
from forge_executor.knowledge_plane.failure_classifier import Classifier
from forge_executor.synthesis_plane.edit_protocol import EditResponse
from forge_executor.synthesis_plane.oracle import (
    GenerationOracle,
    GenerationRequest,
    generate_edits,
)
from forge_executor.synthesis_plane.prompt_templates import PromptFile, PromptRenderer
from forge_executor.synthesis_plane.token_estimator import DEFAULT_ESTIMATOR
from forge_executor.utils.fs import read_text_if_exists, resolve_within
from forge_executor.verification_plane.validation_gate import ValidationGate


class HealPhase(StrEnum):
    GENERATING = "generating"
    APPLYING = "applying"
    VALIDATING = "validating"
    HEALING = "healing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TERMINAL = frozenset({HealPhase.SUCCEEDED, HealPhase.FAILED})
# HEALING is the generating phase of a follow-up attempt.
_AWAITING_GENERATION = frozenset({HealPhase.GENERATING, HealPhase.HEALING})


class InvalidTransitionError(ValueError):
    """An event arrived in a phase that cannot accept it."""


# Events


@dataclass(frozen=True, slots=True)
class Start:
    pass


@dataclass(frozen=True, slots=True)
class Generated:
    response: EditResponse


@dataclass(frozen=True, slots=True)
class GenerationFailed:
    failure: StructuredFailure


@dataclass(frozen=True, slots=True)
class Applied:
    report: ApplyReport


@dataclass(frozen=True, slots=True)
class EditsRejected:
    """Protocol check refused the response before any write."""

    failure: StructuredFailure


@dataclass(frozen=True, slots=True)
class Validated:
    result: ValidationResult
    failure: StructuredFailure | None = None


@dataclass(frozen=True, slots=True)
class DeadlineExceeded:
    elapsed_seconds: float


HealEvent: TypeAlias = (
    Start
    | Generated
    | GenerationFailed
    | Applied
    | EditsRejected
    | Validated
    | DeadlineExceeded
)


# Effects


@dataclass(frozen=True, slots=True)
class RequestGeneration:
    attempt: int
    allowed_paths: tuple[str, ...] | None = None
    diagnostics: tuple[Diagnostic, ...] = ()
    hidden_diagnostic_count: int = 0
    failure: StructuredFailure | None = None


@dataclass(frozen=True, slots=True)
class ApplyEdits:
    response: EditResponse
    allowed_paths: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class RunValidation:
    changed_files: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Finish:
    success: bool
    failure: StructuredFailure | None = None


HealEffect: TypeAlias = RequestGeneration | ApplyEdits | RunValidation | Finish


@dataclass(frozen=True, slots=True)
class HealState:
    """Immutable loop state; ``generation_calls`` counts oracle requests issued."""

    max_attempts: int = DEFAULT_MAX_HEAL_ATTEMPTS
    max_diagnostics: int = DEFAULT_MAX_HEAL_DIAGNOSTICS
    phase: HealPhase = HealPhase.GENERATING
    generation_calls: int = 0
    touched_paths: tuple[str, ...] = ()
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()
    files_edited: tuple[str, ...] = ()
    last_response: EditResponse | None = None
    validation: ValidationResult | None = None
    failure: StructuredFailure | None = None
    succeeded_on_attempt: int | None = None
    explanation: str = ""
    history: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("HealState.max_attempts must be >= 0")
        if self.max_diagnostics <= 0:
            raise ValueError("HealState.max_diagnostics must be > 0")

    @property
    def terminal(self) -> bool:
        return self.phase in _TERMINAL

    @property
    def heal_attempts(self) -> int:
        """Follow-up generations issued after the first one."""

        return max(0, self.generation_calls - 1)

    @property
    def can_heal(self) -> bool:
        return self.generation_calls < self.max_attempts + 1

    @property
    def self_heal_succeeded(self) -> bool:
        return self.phase is HealPhase.SUCCEEDED and self.heal_attempts > 0

    @property
    def current_allowed_paths(self) -> tuple[str, ...] | None:
        return self.touched_paths if self.generation_calls > 1 else None


Step: TypeAlias = tuple[HealState, tuple[HealEffect, ...]]


def step(state: HealState, event: HealEvent) -> Step:
    """Advance the loop by one event. Pure."""

    if state.terminal:
        raise InvalidTransitionError(
            f"loop already {state.phase.value}; got {type(event).__name__}"
        )

    if isinstance(event, DeadlineExceeded):
        failure = StructuredFailure.from_code(
            FailureCode.INFRA_TIMEOUT,
            f"task deadline exceeded after {event.elapsed_seconds:.1f}s",
            details={"elapsed_seconds": round(event.elapsed_seconds, 3)},
        )
        return _fail(state, failure)

    if isinstance(event, Start):
        _expect(state, event, HealPhase.GENERATING)
        if state.generation_calls:
            raise InvalidTransitionError("loop already started")
        started = _moved(state, HealPhase.GENERATING, generation_calls=1)
        return started, (RequestGeneration(attempt=0),)

    if isinstance(event, Generated):
        _expect(state, event, *_AWAITING_GENERATION)
        paths = tuple(sorted({*state.touched_paths, *event.response.paths}))
        allowed = state.current_allowed_paths
        moved = _moved(
            state,
            HealPhase.APPLYING,
            last_response=event.response,
            touched_paths=paths,
            explanation=event.response.explanation or state.explanation,
        )
        return moved, (ApplyEdits(response=event.response, allowed_paths=allowed),)

    if isinstance(event, GenerationFailed):
        _expect(state, event, *_AWAITING_GENERATION)
        return _fail(state, event.failure)

    if isinstance(event, EditsRejected):
        _expect(state, event, HealPhase.APPLYING)
        return _fail(state, event.failure)

    if isinstance(event, Applied):
        _expect(state, event, HealPhase.APPLYING)
        report = event.report
        applied = _moved(
            state,
            HealPhase.APPLYING,
            files_created=_union(state.files_created, report.files_created),
            files_modified=_union(state.files_modified, report.files_modified),
            files_edited=_union(state.files_edited, report.files_edited),
        )
        failure = report.failure
        if failure is None:
            changed = tuple(
                sorted({*report.files_created, *report.files_modified, *report.files_edited})
            )
            return _moved(applied, HealPhase.VALIDATING), (RunValidation(changed_files=changed),)
        if failure.healable and applied.can_heal:
            return _heal(applied, failure=failure)
        return _fail(applied, failure)

    if isinstance(event, Validated):
        _expect(state, event, HealPhase.VALIDATING)
        result = event.result
        validated = replace(state, validation=result)
        if result.passed:
            succeeded = _moved(
                validated,
                HealPhase.SUCCEEDED,
                failure=None,
                succeeded_on_attempt=state.heal_attempts,
            )
            return succeeded, (Finish(success=True),)

        failure = event.failure if event.failure is not None else _validation_failure(result)
        # New diagnostics drive healing whatever their classification.
        healable = result.ran and not result.timed_out and bool(result.new_diagnostics)
        if healable and validated.can_heal:
            return _heal(validated, failure=failure, diagnostics=result.new_diagnostics)
        return _fail(validated, failure)

    raise InvalidTransitionError(f"unknown event {type(event).__name__}")


def _heal(
    state: HealState,
    *,
    failure: StructuredFailure,
    diagnostics: Sequence[Diagnostic] = (),
) -> Step:
    shown = tuple(diagnostics[: state.max_diagnostics])
    healing = _moved(
        state,
        HealPhase.HEALING,
        generation_calls=state.generation_calls + 1,
        failure=failure,
    )
    effect = RequestGeneration(
        attempt=healing.generation_calls - 1,
        allowed_paths=state.touched_paths,
        diagnostics=shown,
        hidden_diagnostic_count=max(0, len(diagnostics) - len(shown)),
        failure=failure,
    )
    return healing, (effect,)


def _fail(state: HealState, failure: StructuredFailure) -> Step:
    failed = _moved(state, HealPhase.FAILED, failure=failure)
    return failed, (Finish(success=False, failure=failure),)


def _moved(state: HealState, phase: HealPhase, **changes: Any) -> HealState:
    history = state.history
    if phase is not state.phase:
        history = (*history, phase.value)
    return replace(state, phase=phase, history=history, **changes)


def _expect(state: HealState, event: HealEvent, *phases: HealPhase) -> None:
    if state.phase not in phases:
        raise InvalidTransitionError(
            f"{type(event).__name__} is not valid in phase {state.phase.value}"
        )


def _union(existing: tuple[str, ...], added: Sequence[str]) -> tuple[str, ...]:
    return tuple(sorted({*existing, *added}))


def _validation_failure(result: ValidationResult) -> StructuredFailure:
    if result.timed_out:
        return StructuredFailure.from_code(
            FailureCode.VALIDATION_TIMEOUT,
            "check command timed out",
            details={"command": list(result.command)},
        )
    if not result.ran:
        return StructuredFailure.from_code(
            FailureCode.VALIDATION_NOT_RUN,
            result.error or "check command did not run",
            details={"command": list(result.command)},
        )
    first = result.new_diagnostics[0].render() if result.new_diagnostics else "check failed"
    return StructuredFailure.from_code(
        FailureCode.VALIDATION_TEST_FAILED,
        first,
        details={"new_error_count": result.new_error_count},
    )


def classify_validation(result: ValidationResult, classifier: Classifier) -> StructuredFailure:
    """Failure for a failed validation: compiler text is classified, the rest is fixed."""

    if result.timed_out or not result.ran or not result.new_diagnostics:
        return _validation_failure(result)
    first = result.new_diagnostics[0]
    return classifier.classify(
        first.render(),
        context=FailurePhase.COMPILATION,
        details={
            "file": first.file,
            "line": first.line,
            "new_error_count": result.new_error_count,
            "baseline_error_count": result.baseline_error_count,
        },
    )


@dataclass(slots=True)
class HealSession:
    """Collaborators and per-task inputs for one ``run_self_heal`` call."""

    context: TaskContext
    oracle: GenerationOracle
    applier: EditApplier
    gate: ValidationGate
    renderer: PromptRenderer
    classifier: Classifier
    initial_prompt: str
    prompt_hash: str = ""
    baseline: ValidationResult | None = None
    generation_timeout_seconds: float | None = None
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    deadline: float | None = None
    started: float = field(default_factory=time.monotonic)

    @property
    def project_root(self) -> Path:
        return self.context.task.project_root


async def run_self_heal(
    session: HealSession,
    *,
    max_attempts: int = DEFAULT_MAX_HEAL_ATTEMPTS,
    max_diagnostics: int = DEFAULT_MAX_HEAL_DIAGNOSTICS,
    logger: Any | None = None,
) -> HealState:
    """Drive ``step`` to a terminal state, performing each effect."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    task_id = session.context.task.task_id
    state = HealState(max_attempts=max_attempts, max_diagnostics=max_diagnostics)
    state, effects = step(state, Start())
    delivered = dict(session.context.delivered_levels)

    while effects:
        effect = effects[0]
        previous = state.phase
        if isinstance(effect, Finish):
            break

        if isinstance(effect, RequestGeneration):
            event = await _generate(session, state, effect, delivered, log)
        elif isinstance(effect, ApplyEdits):
            event = _apply(session, effect, delivered)
        else:
            event = await _validate(session, effect)

        state, effects = step(state, event)
        if state.phase is not previous:
            log.info(
                "self_heal_transition",
                task_id=task_id,
                from_phase=previous.value,
                to_phase=state.phase.value,
                generation_calls=state.generation_calls,
                failure=None if state.failure is None else state.failure.label,
            )

    log.info(
        "self_heal_finished",
        task_id=task_id,
        phase=state.phase.value,
        heal_attempts=state.heal_attempts,
        succeeded_on_attempt=state.succeeded_on_attempt,
    )
    return state


async def _generate(
    session: HealSession,
    state: HealState,
    effect: RequestGeneration,
    delivered: dict[str, ExtractionLevel],
    log: Any,
) -> HealEvent:
    if effect.attempt > 0 and session.deadline is not None:
        now = time.monotonic()
        if now >= session.deadline:
            return DeadlineExceeded(elapsed_seconds=now - session.started)

    task = session.context.task
    if effect.attempt == 0:
        request = GenerationRequest(
            task_id=task.task_id,
            prompt=session.initial_prompt,
            files=session.context.files,
            patterns=task.patterns,
            max_output_tokens=session.max_output_tokens,
            attempt=0,
            prompt_hash=session.prompt_hash,
        )
    else:
        allowed = effect.allowed_paths or ()
        current = _current_files(session.project_root, allowed)
        # Follow-up prompts show these files in full, so full overwrites are allowed.
        for item in current:
            delivered[item.path] = ExtractionLevel.FULL
        rendered = session.renderer.render_self_heal(
            task,
            diagnostics=effect.diagnostics,
            hidden_error_count=effect.hidden_diagnostic_count,
            files=[PromptFile(path=item.path, content=item.content) for item in current],
            allowed_paths=allowed,
            attempt=effect.attempt,
            max_attempts=state.max_attempts,
            failure=effect.failure,
        )
        request = GenerationRequest(
            task_id=task.task_id,
            prompt=rendered.prompt,
            files=current,
            patterns=task.patterns,
            allowed_paths=allowed,
            max_output_tokens=session.max_output_tokens,
            attempt=effect.attempt,
            prompt_hash=rendered.prompt_hash,
        )

    try:
        response = await generate_edits(
            session.oracle,
            request,
            timeout_seconds=session.generation_timeout_seconds,
            logger=log,
        )
    except ForgeError as exc:
        return GenerationFailed(failure=exc.failure)
    except Exception as exc:
        log.exception("oracle_call_failed", task_id=task.task_id, attempt=effect.attempt)
        failure = session.classifier.classify(
            str(exc) or type(exc).__name__,
            context=FailurePhase.INFRASTRUCTURE,
            details={"exception": type(exc).__name__},
        )
        return GenerationFailed(failure=failure)
    return Generated(response=response)


def _apply(
    session: HealSession,
    effect: ApplyEdits,
    delivered: dict[str, ExtractionLevel],
) -> HealEvent:
    try:
        report = session.applier.apply(
            effect.response,
            session.project_root,
            delivered_levels=delivered,
            allowed_paths=effect.allowed_paths,
        )
    except ForgeError as exc:
        return EditsRejected(failure=exc.failure)
    return Applied(report=report)


async def _validate(session: HealSession, effect: RunValidation) -> HealEvent:
    result = await session.gate.validate(
        session.project_root,
        effect.changed_files,
        baseline=session.baseline,
    )
    if result.passed:
        return Validated(result=result)
    return Validated(result=result, failure=classify_validation(result, session.classifier))


def _current_files(project_root: Path, paths: Sequence[str]) -> tuple[ExtractedFile, ...]:
    files: list[ExtractedFile] = []
    for path in paths:
        content = read_text_if_exists(resolve_within(project_root, path), errors="replace")
        if content is None:
            continue
        files.append(
            ExtractedFile(
                path=path,
                content=content,
                level=ExtractionLevel.FULL,
                tokens=DEFAULT_ESTIMATOR.estimate_for_path(path, content),
                role=FileRole.EDIT_TARGET,
                priority=Priority.HIGH,
            )
        )
    return tuple(files)


__all__ = [
    "Applied",
    "ApplyEdits",
    "DeadlineExceeded",
    "EditsRejected",
    "Finish",
    "Generated",
    "GenerationFailed",
    "HealEffect",
    "HealEvent",
    "HealPhase",
    "HealSession",
    "HealState",
    "InvalidTransitionError",
    "RequestGeneration",
    "RunValidation",
    "Start",
    "Validated",
    "classify_validation",
    "run_self_heal",
    "step",
]
