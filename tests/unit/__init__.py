"""Shared offline fakes for unit tests: a scripted oracle and an argv-keyed command executor."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from forge_executor.synthesis_plane.oracle import GenerationRequest
from forge_executor.verification_plane.command import CommandResult, CommandSpec

CHECK_ARGV: tuple[str, ...] = ("npx", "tsc", "--noEmit")

OracleOutcome = Mapping[str, object] | str | BaseException | Callable[[GenerationRequest], Any]
CommandOutcome = CommandResult | Callable[[CommandSpec], CommandResult]


@dataclass(slots=True)
class ScriptedOracle:
    """Returns scripted payloads in order; records every request."""

    outcomes: deque[OracleOutcome]
    delay_seconds: float = 0.0
    requests: list[GenerationRequest] = field(default_factory=list)

    async def generate(self, request: GenerationRequest) -> Any:
        self.requests.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self.outcomes:
            raise AssertionError("scripted oracle outcomes exhausted")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome


class ScriptedExecutor:
    """Command results keyed by argv; the last scripted result for an argv repeats."""

    def __init__(self, scripts: Mapping[tuple[str, ...], Sequence[CommandOutcome]]) -> None:
        self._scripts = {tuple(argv): deque(items) for argv, items in scripts.items()}
        self.calls: list[CommandSpec] = []

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.calls.append(spec)
        queue = self._scripts.get(tuple(spec.argv))
        if not queue:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=0,
                error=f"executable not found: {spec.argv[0]}",
            )
        outcome = queue[0] if len(queue) == 1 else queue.popleft()
        if callable(outcome):
            return outcome(spec)
        return outcome


def command_result(
    stdout: str = "",
    *,
    exit_code: int | None = 0,
    argv: tuple[str, ...] = CHECK_ARGV,
    timed_out: bool = False,
) -> CommandResult:
    return CommandResult(
        argv=argv,
        exit_code=exit_code,
        stdout=stdout,
        stderr="",
        duration_ms=5,
        timed_out=timed_out,
    )


def edit_payload(*operations: Mapping[str, object], explanation: str = "") -> dict[str, object]:
    payload: dict[str, object] = {"files": [dict(item) for item in operations]}
    if explanation:
        payload["explanation"] = explanation
    return payload


def write_tree(root: Path, files: Mapping[str, str]) -> None:
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def scripted_oracle(*outcomes: OracleOutcome, delay_seconds: float = 0.0) -> ScriptedOracle:
    return ScriptedOracle(outcomes=deque(outcomes), delay_seconds=delay_seconds)


def scripted_executor(
    *results: CommandOutcome, argv: Sequence[str] = CHECK_ARGV
) -> ScriptedExecutor:
    return ScriptedExecutor({tuple(argv): results})
