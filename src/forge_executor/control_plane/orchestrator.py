"""
forge-executor - execution orchestrator.

File: src/forge_executor/control_plane/orchestrator.py

Purpose
- Run one task end to end: approval, baseline check, context allocation,
  generation, edit application, validation and self-heal.

What should be included in this file
- ``ExecutionOrchestrator.execute(task) -> ExecutionResult``.
- ``build_orchestrator(settings, ...)`` wiring collaborators from ``ForgeSettings``.

Functional requirements
- Always return an ``ExecutionResult``; ``success=False`` carries a
  ``StructuredFailure``.
- Emit exactly one ``LearningRecord`` per task to the learning sink.
- Abort with ``infrastructure:infra_timeout`` once the task deadline passes
  between attempts.

Non-functional requirements
- Sequential pipeline; awaits only on the oracle, the check command and the
  approval gate.
"""

from __future__ import annotations

import time
from typing import Any

import structlog

from forge_executor.config.settings import ForgeSettings
from forge_executor.constants import (
    DEFAULT_GENERATION_TIMEOUT_SECONDS,
    DEFAULT_MAX_HEAL_ATTEMPTS,
    DEFAULT_MAX_HEAL_DIAGNOSTICS,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_TASK_DEADLINE_SECONDS,
    DEFAULT_TOTAL_BUDGET,
)
from forge_executor.control_plane.approval import (
    ApprovalGate,
    ApprovalPolicy,
    ApprovalRequest,
    DefaultApprovalPolicy,
    policy_for_checks,
)
from forge_executor.control_plane.self_heal import HealPhase, HealSession, HealState, run_self_heal
from forge_executor.domain.errors import ForgeError, TaskAbortedError
from forge_executor.domain.models import (
    ExecutionResult,
    FailureCode,
    FailurePhase,
    StructuredFailure,
    TaskContext,
    TaskSpec,
    ValidationResult,
)
from forge_executor.integration_plane.edit_applier import EditApplier, NonUniquePolicy
from forge_executor.knowledge_plane.failure_classifier import Classifier, FailureClassifier
from forge_executor.knowledge_plane.feedback import (
    LearningSink,
    LoggingLearningSink,
    build_learning_record,
)
from forge_executor.observability.logging import correlation_scope
from forge_executor.synthesis_plane.budget_allocator import ContextBudgetAllocator
from forge_executor.synthesis_plane.oracle import GenerationOracle
from forge_executor.synthesis_plane.prompt_templates import PromptRenderer
from forge_executor.synthesis_plane.providers import create_oracle
from forge_executor.verification_plane.validation_gate import ValidationGate


class ExecutionOrchestrator:
    """Executes tasks against a project root through the injected collaborators."""

    def __init__(
        self,
        *,
        oracle: GenerationOracle,
        allocator: ContextBudgetAllocator | None = None,
        applier: EditApplier | None = None,
        gate: ValidationGate | None = None,
        renderer: PromptRenderer | None = None,
        classifier: Classifier | None = None,
        learning_sink: LearningSink | None = None,
        approval_gate: ApprovalGate | None = None,
        approval_policy: ApprovalPolicy | None = None,
        total_budget: int = DEFAULT_TOTAL_BUDGET,
        max_heal_attempts: int = DEFAULT_MAX_HEAL_ATTEMPTS,
        max_heal_diagnostics: int = DEFAULT_MAX_HEAL_DIAGNOSTICS,
        generation_timeout_seconds: float | None = DEFAULT_GENERATION_TIMEOUT_SECONDS,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        task_deadline_seconds: float | None = DEFAULT_TASK_DEADLINE_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if total_budget <= 0:
            raise ValueError("ExecutionOrchestrator.total_budget must be > 0")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._oracle = oracle
        self._allocator = allocator if allocator is not None else ContextBudgetAllocator()
        self._applier = applier if applier is not None else EditApplier()
        self._gate = gate if gate is not None else ValidationGate()
        self._renderer = renderer if renderer is not None else PromptRenderer()
        self._classifier = classifier if classifier is not None else FailureClassifier()
        self._learning_sink = learning_sink if learning_sink is not None else LoggingLearningSink()
        self._approval_gate = approval_gate
        self._approval_policy = (
            approval_policy if approval_policy is not None else DefaultApprovalPolicy()
        )
        self._total_budget = total_budget
        self._max_heal_attempts = max_heal_attempts
        self._max_heal_diagnostics = max_heal_diagnostics
        self._generation_timeout_seconds = generation_timeout_seconds
        self._max_output_tokens = max_output_tokens
        self._task_deadline_seconds = task_deadline_seconds

    async def execute(self, task: TaskSpec) -> ExecutionResult:
        """Run ``task``; never raises for task-level failures."""

        with correlation_scope(task_id=task.task_id):
            started = time.monotonic()
            limit = (
                task.deadline_seconds
                if task.deadline_seconds is not None
                else self._task_deadline_seconds
            )
            deadline = None if limit is None else started + limit
            self._logger.info(
                "task_execution_started",
                task_id=task.task_id,
                candidates=len(task.candidates),
                edit_targets=list(task.edit_targets),
            )

            context: TaskContext | None = None
            try:
                await self._await_approval(task)
                baseline = await self._gate.capture_baseline(task.project_root)
                context = self._build_context(task)
                state = await self._run_loop(task, context, baseline, started, deadline)
                result = self._result_from_state(task, state, started)
            except ForgeError as exc:
                result = self._failed(task, exc.failure, started)
            except Exception as exc:
                self._logger.exception("task_execution_crashed", task_id=task.task_id)
                failure = self._classifier.classify(
                    f"{type(exc).__name__}: {exc}",
                    context=FailurePhase.INFRASTRUCTURE,
                    details={"exception": type(exc).__name__},
                )
                result = self._failed(task, failure, started)

            self._emit_learning(task, result, context)
            self._logger.info(
                "task_execution_finished",
                task_id=task.task_id,
                success=result.success,
                failure=None if result.failure is None else result.failure.label,
                self_heal_attempts=result.self_heal_attempts,
                elapsed_seconds=round(result.elapsed_seconds, 3),
            )
            return result

    async def _await_approval(self, task: TaskSpec) -> None:
        if self._approval_gate is None:
            return
        triggers = self._approval_policy.triggers_for(task)
        if not triggers:
            return

        request = ApprovalRequest(
            task_id=task.task_id, description=task.description, triggers=triggers
        )
        self._logger.info(
            "approval_requested",
            task_id=task.task_id,
            severity=request.severity.value,
            triggers=[item.to_dict() for item in triggers],
        )
        signal = await self._approval_gate.wait_for_resume(request)
        if not signal.is_approved:
            self._logger.warning("approval_aborted", task_id=task.task_id, reason=signal.reason)
            raise TaskAbortedError(
                signal.reason or "aborted by user",
                details={"triggers": [item.kind.value for item in triggers]},
            )
        self._logger.info("approval_granted", task_id=task.task_id, reason=signal.reason)

    def _build_context(self, task: TaskSpec) -> TaskContext:
        try:
            return self._allocator.build_context(task, self._total_budget)
        except ForgeError:
            raise
        except (ValueError, OSError) as exc:
            raise ForgeError(
                f"invalid candidate files: {exc}",
                code=FailureCode.PREP_WRONG_FILES,
                details={"error": str(exc)},
            ) from exc

    async def _run_loop(
        self,
        task: TaskSpec,
        context: TaskContext,
        baseline: ValidationResult,
        started: float,
        deadline: float | None,
    ) -> HealState:
        if deadline is not None and time.monotonic() >= deadline:
            raise ForgeError(
                "task deadline exceeded before generation",
                code=FailureCode.INFRA_TIMEOUT,
                details={"elapsed_seconds": round(time.monotonic() - started, 3)},
            )

        rendered = self._renderer.render_generation(task, context.files)
        session = HealSession(
            context=context,
            oracle=self._oracle,
            applier=self._applier,
            gate=self._gate,
            renderer=self._renderer,
            classifier=self._classifier,
            initial_prompt=rendered.prompt,
            prompt_hash=rendered.prompt_hash,
            baseline=baseline,
            generation_timeout_seconds=self._generation_timeout_seconds,
            max_output_tokens=self._max_output_tokens,
            deadline=deadline,
            started=started,
        )
        return await run_self_heal(
            session,
            max_attempts=self._max_heal_attempts,
            max_diagnostics=self._max_heal_diagnostics,
            logger=self._logger,
        )

    def _result_from_state(
        self, task: TaskSpec, state: HealState, started: float
    ) -> ExecutionResult:
        success = state.phase is HealPhase.SUCCEEDED
        return ExecutionResult(
            task_id=task.task_id,
            success=success,
            files_created=state.files_created,
            files_modified=state.files_modified,
            files_edited=state.files_edited,
            validation=state.validation,
            self_heal_attempts=state.heal_attempts,
            self_heal_succeeded=state.self_heal_succeeded,
            failure=None if success else state.failure,
            elapsed_seconds=time.monotonic() - started,
            explanation=state.explanation,
        )

    def _failed(
        self, task: TaskSpec, failure: StructuredFailure, started: float
    ) -> ExecutionResult:
        self._logger.warning(
            "task_execution_failed",
            task_id=task.task_id,
            failure=failure.label,
            message=failure.message,
        )
        return ExecutionResult(
            task_id=task.task_id,
            success=False,
            failure=failure,
            elapsed_seconds=time.monotonic() - started,
        )

    def _emit_learning(
        self, task: TaskSpec, result: ExecutionResult, context: TaskContext | None
    ) -> None:
        record = build_learning_record(task, result, context=context)
        try:
            self._learning_sink.record(record)
        except Exception:
            # The result is already final; a sink failure must not replace it.
            self._logger.exception("learning_sink_failed", task_id=task.task_id)


def build_orchestrator(
    settings: ForgeSettings,
    *,
    oracle: GenerationOracle | None = None,
    gate: ValidationGate | None = None,
    learning_sink: LearningSink | None = None,
    approval_gate: ApprovalGate | None = None,
    classifier: Classifier | None = None,
    logger: Any | None = None,
) -> ExecutionOrchestrator:
    """Wire an orchestrator from settings; explicit collaborators win over settings."""

    if oracle is None:
        oracle = create_oracle(
            settings.provider.name,
            model=settings.provider.model,
            api_key_env=settings.provider.api_key_env,
            timeout_seconds=settings.generation.timeout_seconds,
        )
    if gate is None:
        gate = ValidationGate(
            command=settings.validation.command,
            marker_file=settings.validation.marker_file,
            timeout_seconds=settings.validation.timeout_seconds,
            scope_to_changed=settings.validation.scope_to_changed,
        )
    policy = policy_for_checks(settings.approval.triggers)
    return ExecutionOrchestrator(
        oracle=oracle,
        allocator=ContextBudgetAllocator(settings=settings.budget.allocator),
        applier=EditApplier(
            non_unique_policy=NonUniquePolicy(settings.edit.non_unique_policy),
        ),
        gate=gate,
        classifier=classifier,
        learning_sink=learning_sink,
        approval_gate=approval_gate if settings.approval.enabled else None,
        approval_policy=policy,
        total_budget=settings.budget.total_tokens,
        max_heal_attempts=settings.self_heal.max_attempts,
        max_heal_diagnostics=settings.self_heal.max_diagnostics,
        generation_timeout_seconds=settings.generation.timeout_seconds,
        max_output_tokens=settings.generation.max_output_tokens,
        task_deadline_seconds=settings.generation.task_deadline_seconds,
        logger=logger,
    )


__all__ = ["ExecutionOrchestrator", "build_orchestrator"]
