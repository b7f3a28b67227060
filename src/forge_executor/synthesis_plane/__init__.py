"""Synthesis plane: context budgeting, prompt rendering and the generation oracle boundary."""

from __future__ import annotations

from forge_executor.synthesis_plane.budget_allocator import (
    AllocationOutcome,
    AllocatorSettings,
    ContextBudgetAllocator,
    load_candidates,
)
from forge_executor.synthesis_plane.content_extractor import ContentExtractor
from forge_executor.synthesis_plane.edit_protocol import (
    CreateOperation,
    EditOperation,
    EditResponse,
    ModifyOperation,
    SearchReplace,
    parse_edit_response,
    submit_tool_definition,
)
from forge_executor.synthesis_plane.oracle import (
    GenerationOracle,
    GenerationRequest,
    generate_edits,
)
from forge_executor.synthesis_plane.prompt_templates import PromptRenderer, RenderedPrompt
from forge_executor.synthesis_plane.token_estimator import (
    HeuristicTokenEstimator,
    TokenEstimator,
)

__all__ = [
    "AllocationOutcome",
    "AllocatorSettings",
    "ContentExtractor",
    "ContextBudgetAllocator",
    "CreateOperation",
    "EditOperation",
    "EditResponse",
    "GenerationOracle",
    "GenerationRequest",
    "HeuristicTokenEstimator",
    "ModifyOperation",
    "PromptRenderer",
    "RenderedPrompt",
    "SearchReplace",
    "TokenEstimator",
    "generate_edits",
    "load_candidates",
    "parse_edit_response",
    "submit_tool_definition",
]
