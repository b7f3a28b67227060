"""
forge-executor - context budget allocation

File: src/forge_executor/synthesis_plane/budget_allocator.py

Purpose
- Decide per candidate file how many tokens it may use and at which extraction
  level it is delivered to the generation oracle.

What should be included in this file
- Output reserve carved off the total before any file is considered.
- Priority caps: high files share at most 80% of the file budget, medium files
  share 80% of what high files leave, low files only get a leftover above a
  floor, each capped.
- Greedy level choice per file through ``ContentExtractor.select_for_budget``.
- Edit-target override: every edit target is delivered at ``full``; the extra
  tokens come from low-priority references, then the output reserve, then the
  remaining references.

Functional requirements
- Delivered tokens never exceed ``total - output_reserve``.
- An edit target is ``full`` or the allocator raises ``BudgetCapacityError``
  (phase ``preparation``); it is never silently truncated.

Non-functional requirements
- Deterministic for a given candidate order, content and budget.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NoReturn

import structlog

from forge_executor.constants import (
    DEFAULT_HIGH_PRIORITY_SHARE,
    DEFAULT_LOW_FILE_CAP,
    DEFAULT_LOW_MIN_REMAINING,
    DEFAULT_MEDIUM_PRIORITY_SHARE,
    DEFAULT_OUTPUT_RESERVE_RATIO,
)
from forge_executor.domain.errors import BudgetCapacityError
from forge_executor.domain.models import (
    BudgetPlan,
    ExtractedFile,
    ExtractionLevel,
    FileAllocation,
    FileCandidate,
    FileRole,
    Priority,
    TaskContext,
    TaskSpec,
)
from forge_executor.synthesis_plane.content_extractor import (
    ContentExtractor,
    ExtractionSet,
    ExtractionVariant,
)
from forge_executor.utils.fs import read_text_if_exists, resolve_within

if TYPE_CHECKING:
    from collections.abc import Mapping


@dataclass(frozen=True, slots=True)
class AllocatorSettings:
    """Tunable shares and floors for budget allocation."""

    output_reserve_ratio: float = DEFAULT_OUTPUT_RESERVE_RATIO
    min_output_reserve: int = 0
    high_share: float = DEFAULT_HIGH_PRIORITY_SHARE
    medium_share: float = DEFAULT_MEDIUM_PRIORITY_SHARE
    low_min_remaining: int = DEFAULT_LOW_MIN_REMAINING
    low_file_cap: int = DEFAULT_LOW_FILE_CAP

    def __post_init__(self) -> None:
        if not 0.0 <= self.output_reserve_ratio < 1.0:
            raise ValueError("AllocatorSettings.output_reserve_ratio must be in [0, 1)")
        for name in ("high_share", "medium_share"):
            if not 0.0 < getattr(self, name) <= 1.0:
                raise ValueError(f"AllocatorSettings.{name} must be in (0, 1]")
        for name in ("min_output_reserve", "low_min_remaining", "low_file_cap"):
            if getattr(self, name) < 0:
                raise ValueError(f"AllocatorSettings.{name} must be >= 0")


@dataclass(frozen=True, slots=True)
class AllocationOutcome:
    """Budget plan plus the delivered extracted files, in candidate order."""

    plan: BudgetPlan
    files: tuple[ExtractedFile, ...]


@dataclass(slots=True)
class _Entry:
    candidate: FileCandidate
    extraction: ExtractionSet
    slice_tokens: int
    choice: ExtractionVariant
    available: bool
    forced_full: bool = False

    @property
    def path(self) -> str:
        return self.candidate.path


class ContextBudgetAllocator:
    """Allocates a token budget across candidate files."""

    def __init__(
        self,
        *,
        settings: AllocatorSettings | None = None,
        extractor: ContentExtractor | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else AllocatorSettings()
        self._extractor = extractor if extractor is not None else ContentExtractor()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> AllocatorSettings:
        return self._settings

    def allocate(self, files: Sequence[FileCandidate], total_budget: int) -> BudgetPlan:
        """Return the budget plan for ``files``; raises ``BudgetCapacityError``."""

        return self.allocate_with_content(files, total_budget).plan

    def allocate_with_content(
        self,
        files: Sequence[FileCandidate],
        total_budget: int,
    ) -> AllocationOutcome:
        if isinstance(total_budget, bool) or not isinstance(total_budget, int):
            raise TypeError("total_budget must be an integer")
        if total_budget <= 0:
            raise ValueError("total_budget must be > 0")
        _reject_duplicates(files)

        settings = self._settings
        reserve = math.floor(total_budget * settings.output_reserve_ratio)
        file_budget = total_budget - reserve

        extractions = {
            item.path: self._extractor.extract_all(item.path, item.content or "") for item in files
        }
        edit_target_tokens = sum(
            extractions[item.path].full_tokens for item in files if item.is_edit_target
        )
        if edit_target_tokens > total_budget:
            self._raise_capacity(
                "edit targets at full fidelity exceed the total token budget",
                edit_target_tokens=edit_target_tokens,
                total_budget=total_budget,
            )

        slices, caps = self._slices(files, extractions, file_budget)
        entries: list[_Entry] = []
        for item in files:
            extraction = extractions[item.path]
            available = item.content is not None or item.is_edit_target
            choice = (
                self._extractor.select_for_budget(extraction, slices[item.path])
                if available
                else extraction.variant(ExtractionLevel.EXCLUDED)
            )
            entries.append(
                _Entry(
                    candidate=item,
                    extraction=extraction,
                    slice_tokens=slices[item.path],
                    choice=choice,
                    available=available,
                )
            )

        for entry in entries:
            if entry.candidate.is_edit_target and entry.choice.level is not ExtractionLevel.FULL:
                self._logger.info(
                    "budget_edit_target_forced_full",
                    path=entry.path,
                    resolved_level=entry.choice.level.value,
                    slice_tokens=entry.slice_tokens,
                    full_tokens=entry.extraction.full_tokens,
                )
                entry.choice = entry.extraction.variant(ExtractionLevel.FULL)
                entry.forced_full = True

        deficit = _delivered(entries) - file_budget
        if deficit > 0:
            deficit = self._downgrade(entries, deficit, priorities=(Priority.LOW,))
        if deficit > 0:
            room = max(reserve - settings.min_output_reserve, 0)
            taken = min(deficit, room)
            reserve -= taken
            file_budget += taken
            deficit -= taken
            if taken:
                self._logger.info("budget_output_reserve_reduced", tokens=taken, reserve=reserve)
        if deficit > 0:
            deficit = self._downgrade(entries, deficit, priorities=(Priority.MEDIUM, Priority.HIGH))
        if deficit > 0:
            self._raise_capacity(
                "edit targets at full fidelity cannot fit after downgrading every reference",
                edit_target_tokens=edit_target_tokens,
                total_budget=total_budget,
                deficit=deficit,
            )

        plan = BudgetPlan(
            total_tokens=total_budget,
            output_reserve=reserve,
            high_cap=caps[Priority.HIGH],
            medium_cap=caps[Priority.MEDIUM],
            low_cap=caps[Priority.LOW],
            edit_target_tokens=edit_target_tokens,
            allocations=tuple(
                FileAllocation(
                    path=entry.path,
                    role=entry.candidate.role,
                    priority=entry.candidate.priority,
                    slice_tokens=entry.slice_tokens,
                    full_tokens=entry.extraction.full_tokens,
                    level=entry.choice.level,
                    tokens=entry.choice.tokens,
                    forced_full=entry.forced_full,
                )
                for entry in entries
            ),
        )
        delivered = tuple(
            ExtractedFile(
                path=entry.path,
                content=entry.choice.content,
                level=entry.choice.level,
                tokens=entry.choice.tokens,
                role=entry.candidate.role,
                priority=entry.candidate.priority,
            )
            for entry in entries
            if entry.choice.level is not ExtractionLevel.EXCLUDED
        )

        self._logger.info(
            "budget_plan_allocated",
            total_tokens=plan.total_tokens,
            output_reserve=plan.output_reserve,
            allocated_tokens=plan.allocated_tokens,
            files=len(plan.allocations),
            excluded=list(plan.excluded_paths),
            forced_full=sorted(entry.path for entry in entries if entry.forced_full),
        )
        return AllocationOutcome(plan=plan, files=delivered)

    def build_context(self, task: TaskSpec, total_budget: int) -> TaskContext:
        """Load candidate content from the project root and allocate the budget."""

        loaded = load_candidates(task, logger=self._logger)
        outcome = self.allocate_with_content(loaded, total_budget)
        return TaskContext(task=task, plan=outcome.plan, files=outcome.files)

    def _slices(
        self,
        files: Sequence[FileCandidate],
        extractions: Mapping[str, ExtractionSet],
        file_budget: int,
    ) -> tuple[dict[str, int], dict[Priority, int]]:
        settings = self._settings
        by_priority: dict[Priority, list[FileCandidate]] = {
            Priority.HIGH: [],
            Priority.MEDIUM: [],
            Priority.LOW: [],
        }
        for item in files:
            by_priority[item.priority].append(item)

        slices: dict[str, int] = {}
        caps: dict[Priority, int] = {Priority.HIGH: 0, Priority.MEDIUM: 0, Priority.LOW: 0}
        remaining = file_budget

        high = by_priority[Priority.HIGH]
        high_cap = math.floor(file_budget * settings.high_share)
        caps[Priority.HIGH] = high_cap
        per_high = high_cap // max(len(high), 1)
        high_used = 0
        for item in high:
            granted = min(extractions[item.path].full_tokens, per_high, high_cap - high_used)
            slices[item.path] = granted
            high_used += granted
            remaining -= granted

        medium = by_priority[Priority.MEDIUM]
        if medium and remaining > 0:
            medium_cap = math.floor(remaining * settings.medium_share)
            caps[Priority.MEDIUM] = medium_cap
            per_medium = medium_cap // len(medium)
            for item in medium:
                granted = min(extractions[item.path].full_tokens, per_medium)
                slices[item.path] = granted
                remaining -= granted
        else:
            for item in medium:
                slices[item.path] = 0

        low = by_priority[Priority.LOW]
        if low and remaining > settings.low_min_remaining:
            per_low = min(remaining // len(low), settings.low_file_cap)
            caps[Priority.LOW] = per_low * len(low)
            for item in low:
                granted = min(extractions[item.path].full_tokens, per_low)
                slices[item.path] = granted
                remaining -= granted
        else:
            for item in low:
                slices[item.path] = 0

        return slices, caps

    def _downgrade(
        self,
        entries: list[_Entry],
        deficit: int,
        *,
        priorities: tuple[Priority, ...],
    ) -> int:
        """Step references down one cheaper level at a time until ``deficit`` is covered."""

        while deficit > 0:
            victims = [
                entry
                for entry in entries
                if entry.candidate.role is FileRole.REFERENCE
                and entry.candidate.priority in priorities
                and entry.choice.level is not ExtractionLevel.EXCLUDED
            ]
            if not victims:
                return deficit
            victim = max(
                victims,
                key=lambda entry: (
                    entry.candidate.priority.rank,
                    entry.choice.tokens,
                    entry.path,
                ),
            )
            cheaper = [
                variant
                for variant in victim.extraction.below(victim.choice.level)
                if variant.tokens < victim.choice.tokens
            ]
            replacement = (
                cheaper[0] if cheaper else victim.extraction.variant(ExtractionLevel.EXCLUDED)
            )
            self._logger.info(
                "budget_reference_downgraded",
                path=victim.path,
                from_level=victim.choice.level.value,
                to_level=replacement.level.value,
                tokens_freed=victim.choice.tokens - replacement.tokens,
            )
            deficit -= victim.choice.tokens - replacement.tokens
            victim.choice = replacement
        return deficit

    def _raise_capacity(self, message: str, **details: int) -> NoReturn:
        self._logger.warning("budget_capacity_exceeded", reason=message, **details)
        raise BudgetCapacityError(message, details=dict(details))


def load_candidates(task: TaskSpec, *, logger: Any | None = None) -> tuple[FileCandidate, ...]:
    """Read candidate content from disk when it was not supplied inline.

    Missing edit targets are treated as new, empty files. Missing references
    keep ``content=None`` and end up excluded.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    loaded: list[FileCandidate] = []
    for item in task.candidates:
        if item.content is not None:
            loaded.append(item)
            continue
        text = read_text_if_exists(resolve_within(task.project_root, item.path))
        if text is None:
            log.info("budget_candidate_missing", path=item.path, role=item.role.value)
            loaded.append(item.with_content("") if item.is_edit_target else item)
            continue
        loaded.append(item.with_content(text))
    return tuple(loaded)


def _delivered(entries: Sequence[_Entry]) -> int:
    return sum(entry.choice.tokens for entry in entries)


def _reject_duplicates(files: Sequence[FileCandidate]) -> None:
    seen: set[str] = set()
    for item in files:
        if item.path in seen:
            raise ValueError(f"duplicate candidate path: {item.path!r}")
        seen.add(item.path)


__all__ = [
    "AllocationOutcome",
    "AllocatorSettings",
    "ContextBudgetAllocator",
    "load_candidates",
]
