"""
forge-executor - validation gate

File: src/forge_executor/verification_plane/validation_gate.py

Purpose
- Decide whether an applied change set compiles, relative to the errors the
  project already had before the task started.

What should be included in this file
- Baseline capture and post-change validation using the same check command.
- Skip semantics when the project has no check configuration marker.
- Optional scoping of new diagnostics to changed files and their importers.

Functional requirements
- Validation passes when no error diagnostic is new relative to the baseline.
  Diagnostics match on ``(file, code, message)`` so line shifts caused by the
  edit do not count as new errors.
- A check that exceeds its timeout fails with ``timed_out`` set.
- A check command that cannot be started fails with ``error`` set.

Non-functional requirements
- The gate never writes to the project tree.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from pathlib import Path, PurePosixPath
from typing import Any, Final

import structlog

from forge_executor.constants import (
    DEFAULT_CHECK_COMMAND,
    DEFAULT_CHECK_MARKER_FILE,
    DEFAULT_CHECK_TIMEOUT_SECONDS,
)
from forge_executor.domain.models import Diagnostic, ValidationResult
from forge_executor.utils.fs import PathEscapeError, read_text_if_exists, resolve_within
from forge_executor.verification_plane.command import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
)
from forge_executor.verification_plane.diagnostics import (
    errors_only,
    new_since_baseline,
    parse_diagnostics,
)

_IMPORT_SPECIFIER_RE: Final[re.Pattern[str]] = re.compile(
    r"""(?:\bfrom\s+|\bimport\s*\(\s*|\brequire\s*\(\s*|^\s*import\s+)['"](?P<spec>[^'"]+)['"]""",
    re.MULTILINE,
)
_PY_FROM_IMPORT_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*from\s+(?P<module>\.*[\w.]*)\s+import\s",
    re.MULTILINE,
)
_PY_IMPORT_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*import\s+(?P<module>[\w.]+)",
    re.MULTILINE,
)
# Longest first so ".d.ts" wins over ".ts".
_STRIPPABLE_SUFFIXES: Final[tuple[str, ...]] = (
    ".d.ts",
    ".tsx",
    ".jsx",
    ".mjs",
    ".cjs",
    ".ts",
    ".js",
    ".py",
)
_UNATTRIBUTED_MESSAGE_CHARS = 200


class ValidationGate:
    """Runs the project's check command and compares results to a baseline."""

    def __init__(
        self,
        *,
        command: Sequence[str] = DEFAULT_CHECK_COMMAND,
        marker_file: str | None = DEFAULT_CHECK_MARKER_FILE,
        timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
        scope_to_changed: bool = False,
        executor: CommandExecutor | None = None,
        logger: Any | None = None,
    ) -> None:
        if isinstance(command, str) or not command:
            raise ValueError("ValidationGate.command: expected a non-empty argv sequence")
        if timeout_seconds <= 0:
            raise ValueError("ValidationGate.timeout_seconds: must be > 0")
        self._command = tuple(command)
        self._marker_file = marker_file or None
        self._timeout_seconds = float(timeout_seconds)
        self._scope_to_changed = scope_to_changed
        self._executor = executor if executor is not None else LocalSubprocessExecutor()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    def is_configured(self, project_root: Path | str) -> bool:
        """True when the marker file exists (or no marker is required)."""

        if self._marker_file is None:
            return True
        return (Path(project_root) / self._marker_file).is_file()

    async def capture_baseline(self, project_root: Path | str) -> ValidationResult:
        """Run the check before any edit; its diagnostics become the baseline."""

        if not self.is_configured(project_root):
            return self._skipped()

        result = await self._run(project_root)
        diagnostics = _diagnostics_for(result)
        baseline = ValidationResult(
            passed=not errors_only(diagnostics) and not result.timed_out and result.error is None,
            raw_output=result.output,
            diagnostics=diagnostics,
            baseline_error_count=len(errors_only(diagnostics)),
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            command=self._command,
            error=result.error,
        )
        self._logger.info(
            "validation_baseline_captured",
            project_root=str(project_root),
            error_count=baseline.error_count,
            timed_out=result.timed_out,
            duration_ms=result.duration_ms,
        )
        return baseline

    async def validate(
        self,
        project_root: Path | str,
        changed_files: Iterable[str] = (),
        *,
        baseline: ValidationResult | None = None,
    ) -> ValidationResult:
        """Check the tree after edits were applied."""

        if not self.is_configured(project_root):
            self._logger.info(
                "validation_skipped",
                project_root=str(project_root),
                marker_file=self._marker_file,
            )
            return self._skipped()

        result = await self._run(project_root)
        baseline_diagnostics = baseline.diagnostics if baseline is not None else ()

        if result.timed_out:
            self._logger.warning(
                "validation_timed_out",
                project_root=str(project_root),
                timeout_seconds=self._timeout_seconds,
            )
            return ValidationResult(
                passed=False,
                raw_output=result.output,
                baseline_error_count=len(errors_only(baseline_diagnostics)),
                timed_out=True,
                command=self._command,
            )
        if result.error is not None:
            self._logger.warning(
                "validation_not_run",
                project_root=str(project_root),
                error=result.error,
            )
            return ValidationResult(
                passed=False,
                raw_output=result.output,
                baseline_error_count=len(errors_only(baseline_diagnostics)),
                command=self._command,
                error=result.error,
            )

        diagnostics = _diagnostics_for(result)
        fresh = errors_only(new_since_baseline(diagnostics, baseline_diagnostics))
        reported = fresh
        if self._scope_to_changed and fresh:
            scoped = self._scope(project_root, fresh, changed_files)
            reported = scoped if scoped else fresh

        validation = ValidationResult(
            passed=not fresh,
            raw_output=result.output,
            diagnostics=diagnostics,
            new_diagnostics=reported,
            baseline_error_count=len(errors_only(baseline_diagnostics)),
            exit_code=result.exit_code,
            command=self._command,
        )
        self._logger.info(
            "validation_completed",
            project_root=str(project_root),
            passed=validation.passed,
            error_count=validation.error_count,
            new_error_count=validation.new_error_count,
            baseline_error_count=validation.baseline_error_count,
            duration_ms=result.duration_ms,
        )
        return validation

    async def _run(self, project_root: Path | str) -> CommandResult:
        spec = CommandSpec(
            argv=self._command,
            cwd=str(project_root),
            timeout_seconds=self._timeout_seconds,
        )
        return await self._executor.run(spec)

    def _skipped(self) -> ValidationResult:
        return ValidationResult(
            passed=True,
            raw_output=f"No {self._marker_file} found; check skipped",
            skipped=True,
            command=self._command,
        )

    def _scope(
        self,
        project_root: Path | str,
        diagnostics: Sequence[Diagnostic],
        changed_files: Iterable[str],
    ) -> tuple[Diagnostic, ...]:
        changed = {_module_key(path) for path in changed_files}
        if not changed:
            return ()

        scoped: list[Diagnostic] = []
        importer_cache: dict[str, bool] = {}
        for item in diagnostics:
            if not item.file:
                continue
            if _module_key(item.file) in changed:
                scoped.append(item)
                continue
            if item.file not in importer_cache:
                importer_cache[item.file] = _imports_any(project_root, item.file, changed)
            if importer_cache[item.file]:
                scoped.append(item)
        return tuple(scoped)


def _diagnostics_for(result: CommandResult) -> tuple[Diagnostic, ...]:
    diagnostics = parse_diagnostics(result.output)
    if diagnostics or result.is_success() or result.timed_out or result.error is not None:
        return diagnostics
    # Failing exit status with unparseable output still has to count as an error.
    first_line = next((line.strip() for line in result.output.splitlines() if line.strip()), "")
    message = first_line[:_UNATTRIBUTED_MESSAGE_CHARS] or f"exit status {result.exit_code}"
    return (Diagnostic(file="", line=0, code="", message=message),)


def _module_key(path: str) -> str:
    posix = PurePosixPath(path.replace("\\", "/"))
    name = posix.name
    for suffix in _STRIPPABLE_SUFFIXES:
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
            break
    key = (posix.parent / name).as_posix()
    for tail in ("/index", "/__init__"):
        if key.endswith(tail):
            return key[: -len(tail)]
    return key


def _imports_any(project_root: Path | str, importer: str, changed: set[str]) -> bool:
    try:
        source = read_text_if_exists(resolve_within(project_root, importer), errors="replace")
    except (PathEscapeError, OSError, UnicodeDecodeError):
        return False
    if not source:
        return False
    base = PurePosixPath(importer).parent
    python = importer.endswith(".py")
    for target in _import_targets(importer, source, base):
        if target in changed:
            return True
        # Absolute Python imports name the package, not the source root.
        if python and any(key.endswith("/" + target) for key in changed):
            return True
    return False


def _import_targets(importer: str, source: str, base: PurePosixPath) -> set[str]:
    targets: set[str] = set()
    if importer.endswith(".py"):
        modules = [match.group("module") for match in _PY_FROM_IMPORT_RE.finditer(source)]
        modules.extend(match.group("module") for match in _PY_IMPORT_RE.finditer(source))
        for module in modules:
            resolved = _resolve_python_module(module, base)
            if resolved:
                targets.add(resolved)
        return targets

    for match in _IMPORT_SPECIFIER_RE.finditer(source):
        spec = match.group("spec")
        if not spec.startswith("."):
            continue
        resolved = _normalize_posix(base / spec)
        if resolved is not None:
            targets.add(_module_key(resolved))
    return targets


def _resolve_python_module(module: str, base: PurePosixPath) -> str | None:
    dots = len(module) - len(module.lstrip("."))
    remainder = module[dots:].replace(".", "/")
    if dots == 0:
        return remainder or None
    anchor = base
    for _ in range(dots - 1):
        anchor = anchor.parent
    joined = anchor / remainder if remainder else anchor
    return _normalize_posix(joined)


def _normalize_posix(path: PurePosixPath) -> str | None:
    parts: list[str] = []
    for part in path.parts:
        if part in {"", "."}:
            continue
        if part == "..":
            if not parts:
                return None
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts) if parts else None


__all__ = ["ValidationGate"]
