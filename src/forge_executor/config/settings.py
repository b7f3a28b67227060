"""Typed, immutable views over a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from forge_executor.config.schema import assert_valid_config, default_config, merge_config
from forge_executor.synthesis_plane.budget_allocator import AllocatorSettings


@dataclass(frozen=True, slots=True)
class BudgetSettings:
    total_tokens: int
    allocator: AllocatorSettings


@dataclass(frozen=True, slots=True)
class EditSettings:
    non_unique_policy: str


@dataclass(frozen=True, slots=True)
class ValidationSettings:
    command: tuple[str, ...]
    marker_file: str | None
    timeout_seconds: float
    scope_to_changed: bool


@dataclass(frozen=True, slots=True)
class SelfHealSettings:
    max_attempts: int
    max_diagnostics: int


@dataclass(frozen=True, slots=True)
class GenerationSettings:
    timeout_seconds: float
    max_output_tokens: int
    task_deadline_seconds: float


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    name: str
    model: str
    api_key_env: str


@dataclass(frozen=True, slots=True)
class ApprovalSettings:
    enabled: bool
    triggers: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str
    log_format: str
    log_dir: str
    redact_secrets: bool


@dataclass(frozen=True, slots=True)
class ForgeSettings:
    """Executor settings; build with ``from_mapping`` over ``load_config`` output."""

    budget: BudgetSettings
    edit: EditSettings
    validation: ValidationSettings
    self_heal: SelfHealSettings
    generation: GenerationSettings
    provider: ProviderSettings
    approval: ApprovalSettings
    observability: ObservabilitySettings
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_mapping(cls, config: Mapping[str, object]) -> ForgeSettings:
        """Validate ``config`` (a full or partial mapping over defaults) and type it."""

        data = assert_valid_config(merge_config(default_config(), config))
        budget = data["budget"]
        validation = data["validation"]
        generation = data["generation"]
        provider = data["provider"]
        observability = data["observability"]
        return cls(
            budget=BudgetSettings(
                total_tokens=budget["total_tokens"],
                allocator=AllocatorSettings(
                    output_reserve_ratio=budget["output_reserve_ratio"],
                    min_output_reserve=budget["min_output_reserve"],
                    high_share=budget["high_share"],
                    medium_share=budget["medium_share"],
                    low_min_remaining=budget["low_min_remaining"],
                    low_file_cap=budget["low_file_cap"],
                ),
            ),
            edit=EditSettings(non_unique_policy=data["edit"]["non_unique_policy"]),
            validation=ValidationSettings(
                command=tuple(validation["command"]),
                marker_file=validation["marker_file"] or None,
                timeout_seconds=validation["timeout_seconds"],
                scope_to_changed=validation["scope_to_changed"],
            ),
            self_heal=SelfHealSettings(
                max_attempts=data["self_heal"]["max_attempts"],
                max_diagnostics=data["self_heal"]["max_diagnostics"],
            ),
            generation=GenerationSettings(
                timeout_seconds=generation["timeout_seconds"],
                max_output_tokens=generation["max_output_tokens"],
                task_deadline_seconds=generation["task_deadline_seconds"],
            ),
            provider=ProviderSettings(
                name=provider["name"],
                model=provider["model"],
                api_key_env=provider["api_key_env"],
            ),
            approval=ApprovalSettings(
                enabled=data["approval"]["enabled"],
                triggers=tuple(data["approval"]["triggers"]),
            ),
            observability=ObservabilitySettings(
                log_level=observability["log_level"],
                log_format=observability["log_format"],
                log_dir=observability["log_dir"],
                redact_secrets=observability["redact_secrets"],
            ),
            raw=data,
        )

    @classmethod
    def defaults(cls) -> ForgeSettings:
        return cls.from_mapping({})


__all__ = [
    "ApprovalSettings",
    "BudgetSettings",
    "EditSettings",
    "ForgeSettings",
    "GenerationSettings",
    "ObservabilitySettings",
    "ProviderSettings",
    "SelfHealSettings",
    "ValidationSettings",
]
