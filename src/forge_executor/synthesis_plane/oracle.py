"""
forge-executor - generation oracle contract

File: src/forge_executor/synthesis_plane/oracle.py

Purpose
- The boundary between the executor and whatever produces code changes.

What should be included in this file
- ``GenerationRequest``: everything one generation call needs.
- ``GenerationOracle`` protocol.
- ``generate_edits``: bounded-time call plus strict response parsing.

Functional requirements
- A call that exceeds its timeout is cancelled and surfaces as
  ``code_generation:codegen_timeout``.
- Oracle payloads are parsed with ``parse_edit_response`` and never repaired.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from forge_executor.constants import DEFAULT_MAX_OUTPUT_TOKENS
from forge_executor.domain.errors import GenerationTimeoutError
from forge_executor.domain.models import ExtractedFile, JSONValue
from forge_executor.synthesis_plane.edit_protocol import (
    EditResponse,
    parse_edit_response,
    submit_tool_definition,
)

OraclePayload = Mapping[str, object] | str


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """One generation call. ``attempt`` is 0 for the first call, then 1, 2, ... for heals."""

    task_id: str
    prompt: str
    files: tuple[ExtractedFile, ...] = ()
    patterns: str = ""
    allowed_paths: tuple[str, ...] | None = None
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    attempt: int = 0
    prompt_hash: str = ""
    tool: Mapping[str, JSONValue] = field(default_factory=submit_tool_definition)

    def __post_init__(self) -> None:
        if not self.prompt.strip():
            raise ValueError("GenerationRequest.prompt must be non-empty")
        if self.max_output_tokens <= 0:
            raise ValueError("GenerationRequest.max_output_tokens must be > 0")
        if self.attempt < 0:
            raise ValueError("GenerationRequest.attempt must be >= 0")
        object.__setattr__(self, "files", tuple(self.files))
        if self.allowed_paths is not None:
            object.__setattr__(self, "allowed_paths", tuple(sorted(set(self.allowed_paths))))

    @property
    def is_heal(self) -> bool:
        return self.attempt > 0


@runtime_checkable
class GenerationOracle(Protocol):
    async def generate(self, request: GenerationRequest) -> OraclePayload: ...


async def generate_edits(
    oracle: GenerationOracle,
    request: GenerationRequest,
    *,
    timeout_seconds: float | None,
    logger: Any | None = None,
) -> EditResponse:
    """Call ``oracle`` within ``timeout_seconds`` and parse its payload."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    log.info(
        "generation_requested",
        task_id=request.task_id,
        attempt=request.attempt,
        files=len(request.files),
        prompt_hash=request.prompt_hash,
    )
    try:
        if timeout_seconds is None:
            payload = await oracle.generate(request)
        else:
            payload = await asyncio.wait_for(oracle.generate(request), timeout=timeout_seconds)
    except TimeoutError as exc:
        log.warning(
            "generation_timed_out",
            task_id=request.task_id,
            attempt=request.attempt,
            timeout_seconds=timeout_seconds,
        )
        raise GenerationTimeoutError(
            f"generation exceeded its {timeout_seconds}s timeout",
            details={"attempt": request.attempt, "timeout_seconds": timeout_seconds},
        ) from exc

    response = parse_edit_response(payload)
    log.info(
        "generation_received",
        task_id=request.task_id,
        attempt=request.attempt,
        paths=list(response.paths),
    )
    return response


__all__ = [
    "GenerationOracle",
    "GenerationRequest",
    "OraclePayload",
    "generate_edits",
]
