"""
forge-executor - check command execution

File: src/forge_executor/verification_plane/command.py

Purpose
- Async subprocess boundary the validation gate uses to run the project's
  compiler or type checker. Tests swap it for a scripted executor.

Functional requirements
- A command that cannot be started yields a result with ``error`` set instead
  of raising.
- Timeouts and cancellation kill the child process before returning.
- Output is decoded leniently, newline-normalized and truncated.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import NamedTuple, Protocol, runtime_checkable

_MAX_OUTPUT_CHARS = 200_000


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """argv plus the process environment it runs in."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    inherit_env: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.argv, str) or not isinstance(self.argv, Sequence):
            raise ValueError("CommandSpec.argv must be a sequence of strings, not a shell line")
        argv = tuple(self.argv)
        if not argv or any(not isinstance(part, str) or not part for part in argv):
            raise ValueError(f"CommandSpec.argv must hold non-empty strings: {argv!r}")
        timeout = self.timeout_seconds
        if timeout is not None and (isinstance(timeout, bool) or timeout <= 0):
            raise ValueError("CommandSpec.timeout_seconds must be > 0 when set")
        object.__setattr__(self, "argv", argv)
        object.__setattr__(self, "cwd", None if self.cwd is None else os.fspath(self.cwd))
        object.__setattr__(self, "env", dict(sorted(self.env.items())))
        object.__setattr__(self, "allowed_exit_codes", tuple(sorted(set(self.allowed_exit_codes))))

    def child_env(self) -> dict[str, str] | None:
        """Environment for the child; ``None`` lets it inherit ours unchanged."""

        if not self.inherit_env:
            return dict(self.env)
        if not self.env:
            return None
        return {**os.environ, **self.env}


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.timed_out and self.exit_code is not None:
            raise ValueError("CommandResult.exit_code must be None for a timed out command")

    @property
    def output(self) -> str:
        """stdout then stderr, skipping blank streams."""

        return "\n".join(stream for stream in (self.stdout, self.stderr) if stream.strip())

    def is_success(self, spec: CommandSpec | None = None) -> bool:
        if self.timed_out or self.error is not None or self.exit_code is None:
            return False
        allowed = (0,) if spec is None else spec.allowed_exit_codes
        return self.exit_code in allowed


@runtime_checkable
class CommandExecutor(Protocol):
    async def run(self, spec: CommandSpec) -> CommandResult: ...


class _Captured(NamedTuple):
    stdout: bytes
    stderr: bytes
    exit_code: int | None
    timed_out: bool


class LocalSubprocessExecutor:
    """Runs argv directly (no shell) with ``asyncio.create_subprocess_exec``."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int | None = _MAX_OUTPUT_CHARS,
    ) -> None:
        for name, value in (
            ("default_timeout_seconds", default_timeout_seconds),
            ("max_output_chars", max_output_chars),
        ):
            if value is not None and value <= 0:
                raise ValueError(f"LocalSubprocessExecutor.{name} must be > 0 when set")
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = (
            spec.timeout_seconds
            if spec.timeout_seconds is not None
            else self._default_timeout_seconds
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.child_env(),
                stdin=(
                    asyncio.subprocess.DEVNULL
                    if spec.stdin_text is None
                    else asyncio.subprocess.PIPE
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_since(started_ns),
                error=f"cannot start {spec.argv[0]}: {exc}",
            )

        payload = None if spec.stdin_text is None else spec.stdin_text.encode("utf-8")
        captured = await _capture(process, payload, timeout)
        return CommandResult(
            argv=spec.argv,
            exit_code=captured.exit_code,
            stdout=self._text(captured.stdout),
            stderr=self._text(captured.stderr),
            duration_ms=_since(started_ns),
            timed_out=captured.timed_out,
            error=f"command timed out after {timeout:.3f}s" if captured.timed_out else None,
        )

    def _text(self, raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n").replace("\r", "\n")
        limit = self._max_output_chars
        if limit is None or len(text) <= limit:
            return text
        return f"{text[:limit]}\n...[truncated {len(text) - limit} chars]"


async def _capture(
    process: asyncio.subprocess.Process, payload: bytes | None, timeout: float | None
) -> _Captured:
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
    except TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        stdout, stderr = await process.communicate()
        return _Captured(stdout, stderr, None, True)
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise
    return _Captured(stdout, stderr, process.returncode, False)


def _since(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
]
