"""
forge-executor - edit applier

File: src/forge_executor/integration_plane/edit_applier.py

Purpose
- Apply validated edit operations to the project tree with all-or-nothing
  atomicity per file.

What should be included in this file
- Protocol checks that run before any write: full overwrites only for files
  delivered at ``full`` fidelity or absent from disk, optional allow-list of
  paths for restricted follow-up attempts.
- Search/replace application against an in-memory working copy: every pair is
  validated in order before anything is written.
- Tunable handling of non-unique search strings.
- One atomic write per file.

Functional requirements
- A missing search string leaves the file byte-identical on disk and yields
  ``file_operation:file_edit_no_match`` with a preview of the missing text.
- Each pair replaces the first occurrence only.
- Files are independent; one file's failure does not roll back another.

Non-functional requirements
- The applier is the only component that writes to the working tree.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Collection, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from forge_executor.constants import SEARCH_PREVIEW_CHARS
from forge_executor.domain.errors import ForgeError, ProtocolViolationError
from forge_executor.domain.models import (
    EditAction,
    ExtractionLevel,
    FailureCode,
    StructuredFailure,
)
from forge_executor.synthesis_plane.edit_protocol import (
    EditOperation,
    EditResponse,
    FileOperation,
    SearchReplace,
)
from forge_executor.utils.fs import PathEscapeError, atomic_write, resolve_within

FileWriter = Callable[[Path, bytes], None]


class NonUniquePolicy(StrEnum):
    FIRST_OCCURRENCE = "first_occurrence"
    REJECT_AMBIGUOUS = "reject_ambiguous"


class EditApplyError(ForgeError):
    """A search/replace set could not be applied to a working copy."""

    default_code = FailureCode.FILE_EDIT_NO_MATCH


@dataclass(frozen=True, slots=True)
class FileApplyResult:
    path: str
    action: EditAction
    applied: bool
    edits_applied: int = 0
    changed: bool = False
    failure: StructuredFailure | None = None


@dataclass(frozen=True, slots=True)
class ApplyReport:
    """Per-file outcome of one apply call."""

    results: tuple[FileApplyResult, ...]

    @property
    def ok(self) -> bool:
        return all(item.applied for item in self.results)

    @property
    def files_created(self) -> tuple[str, ...]:
        return self._applied(EditAction.CREATE)

    @property
    def files_modified(self) -> tuple[str, ...]:
        return self._applied(EditAction.MODIFY)

    @property
    def files_edited(self) -> tuple[str, ...]:
        return self._applied(EditAction.EDIT)

    @property
    def failures(self) -> tuple[StructuredFailure, ...]:
        return tuple(item.failure for item in self.results if item.failure is not None)

    @property
    def failure(self) -> StructuredFailure | None:
        failures = self.failures
        return failures[0] if failures else None

    def _applied(self, action: EditAction) -> tuple[str, ...]:
        return tuple(
            sorted(item.path for item in self.results if item.applied and item.action is action)
        )


def apply_search_replace(
    content: str,
    edits: Sequence[SearchReplace],
    *,
    policy: NonUniquePolicy = NonUniquePolicy.FIRST_OCCURRENCE,
    path: str = "<memory>",
) -> str:
    """Apply ``edits`` in order to ``content`` and return the new working copy.

    Every pair is checked against the working copy produced by the pairs before
    it. Raises ``EditApplyError`` on the first pair that cannot be applied, in
    which case no partial result is returned.
    """

    working = content
    for index, pair in enumerate(edits):
        occurrences = working.count(pair.search)
        if occurrences == 0:
            raise EditApplyError(
                f"search string not found in {path} (edit {index + 1} of {len(edits)}): "
                f"{_preview(pair.search)!r}",
                details={
                    "path": path,
                    "edit_index": index,
                    "search_preview": _preview(pair.search),
                },
            )
        if occurrences > 1 and policy is NonUniquePolicy.REJECT_AMBIGUOUS:
            raise EditApplyError(
                f"search string matches {occurrences} locations in {path} "
                f"(edit {index + 1} of {len(edits)}): {_preview(pair.search)!r}",
                details={
                    "path": path,
                    "edit_index": index,
                    "occurrences": occurrences,
                    "search_preview": _preview(pair.search),
                },
            )
        working = working.replace(pair.search, pair.replace, 1)
    return working


class EditApplier:
    """Applies an ``EditResponse`` to a project tree."""

    def __init__(
        self,
        *,
        non_unique_policy: NonUniquePolicy | str = NonUniquePolicy.FIRST_OCCURRENCE,
        writer: FileWriter | None = None,
        logger: Any | None = None,
    ) -> None:
        self._policy = NonUniquePolicy(non_unique_policy)
        self._writer = writer if writer is not None else atomic_write
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def non_unique_policy(self) -> NonUniquePolicy:
        return self._policy

    def check_protocol(
        self,
        response: EditResponse,
        project_root: Path | str,
        *,
        delivered_levels: Mapping[str, ExtractionLevel] | None = None,
        allowed_paths: Collection[str] | None = None,
    ) -> None:
        """Reject responses that must not reach the filesystem.

        Raises ``ProtocolViolationError`` (phase ``code_generation``) before any
        file is touched.
        """

        levels = dict(delivered_levels or {})
        allowed = None if allowed_paths is None else frozenset(allowed_paths)
        for operation in response.operations:
            try:
                target = resolve_within(project_root, operation.path)
            except PathEscapeError as exc:
                raise ProtocolViolationError(
                    str(exc),
                    reason="path_escape",
                    details={"path": operation.path},
                ) from exc

            if allowed is not None and operation.path not in allowed:
                raise ProtocolViolationError(
                    f"{operation.path} is outside the files this attempt may change",
                    reason="path_not_allowed",
                    code=FailureCode.CODEGEN_WRONG_ACTION,
                    details={"path": operation.path, "allowed": sorted(allowed)},
                )

            if operation.action is EditAction.EDIT or not target.exists():
                continue
            level = levels.get(operation.path)
            if level is not ExtractionLevel.FULL:
                seen = "not delivered" if level is None else f"delivered as {level.value}"
                raise ProtocolViolationError(
                    f"{operation.action.value} would overwrite {operation.path}, which was "
                    f"{seen}; use edit with search/replace instead",
                    reason="overwrite_below_full",
                    code=FailureCode.CODEGEN_WRONG_ACTION,
                    details={
                        "path": operation.path,
                        "action": operation.action.value,
                        "level": None if level is None else level.value,
                    },
                )

    def apply(
        self,
        response: EditResponse,
        project_root: Path | str,
        *,
        delivered_levels: Mapping[str, ExtractionLevel] | None = None,
        allowed_paths: Collection[str] | None = None,
    ) -> ApplyReport:
        """Check the protocol, then apply every operation independently."""

        self.check_protocol(
            response,
            project_root,
            delivered_levels=delivered_levels,
            allowed_paths=allowed_paths,
        )
        results = tuple(self._apply_one(item, Path(project_root)) for item in response.operations)
        report = ApplyReport(results=results)
        self._logger.info(
            "edit_apply_completed",
            created=list(report.files_created),
            modified=list(report.files_modified),
            edited=list(report.files_edited),
            failed=[item.path for item in results if not item.applied],
        )
        return report

    def _apply_one(self, operation: FileOperation, project_root: Path) -> FileApplyResult:
        target = resolve_within(project_root, operation.path)
        action = operation.action

        try:
            if isinstance(operation, EditOperation):
                return self._apply_edit(operation, target)

            if action is EditAction.MODIFY and not target.exists():
                return self._rejected(
                    operation.path,
                    action,
                    StructuredFailure.from_code(
                        FailureCode.FILE_NOT_FOUND,
                        f"cannot modify {operation.path}: file does not exist",
                        details={"path": operation.path},
                    ),
                )
            self._writer(target, operation.content.encode("utf-8"))
        except OSError as exc:
            return self._rejected(operation.path, action, _os_failure(operation.path, exc))
        except UnicodeError as exc:
            return self._rejected(operation.path, action, _encoding_failure(operation.path, exc))

        self._logger.debug("edit_file_written", path=operation.path, action=action.value)
        return FileApplyResult(path=operation.path, action=action, applied=True, changed=True)

    def _apply_edit(self, operation: EditOperation, target: Path) -> FileApplyResult:
        if not target.is_file():
            return self._rejected(
                operation.path,
                EditAction.EDIT,
                StructuredFailure.from_code(
                    FailureCode.FILE_NOT_FOUND,
                    f"cannot edit {operation.path}: file not found",
                    details={"path": operation.path},
                ),
            )

        # newline="" keeps CRLF files byte-identical outside the edited spans.
        with target.open("r", encoding="utf-8", newline="") as handle:
            original = handle.read()

        try:
            updated = apply_search_replace(
                original,
                operation.edits,
                policy=self._policy,
                path=operation.path,
            )
        except EditApplyError as exc:
            return self._rejected(operation.path, EditAction.EDIT, exc.failure)

        if self._policy is NonUniquePolicy.FIRST_OCCURRENCE:
            self._warn_ambiguous(operation, original)

        changed = updated != original
        if changed:
            self._writer(target, updated.encode("utf-8"))
        self._logger.debug(
            "edit_file_written",
            path=operation.path,
            action=EditAction.EDIT.value,
            edits=len(operation.edits),
            changed=changed,
        )
        return FileApplyResult(
            path=operation.path,
            action=EditAction.EDIT,
            applied=True,
            edits_applied=len(operation.edits),
            changed=changed,
        )

    def _warn_ambiguous(self, operation: EditOperation, original: str) -> None:
        working = original
        for index, pair in enumerate(operation.edits):
            occurrences = working.count(pair.search)
            if occurrences > 1:
                self._logger.warning(
                    "edit_search_ambiguous",
                    path=operation.path,
                    edit_index=index,
                    occurrences=occurrences,
                )
            working = working.replace(pair.search, pair.replace, 1)

    def _rejected(
        self,
        path: str,
        action: EditAction,
        failure: StructuredFailure,
    ) -> FileApplyResult:
        self._logger.warning(
            "edit_file_rejected",
            path=path,
            action=action.value,
            failure=failure.label,
            message=failure.message,
        )
        return FileApplyResult(path=path, action=action, applied=False, failure=failure)


def _os_failure(path: str, exc: OSError) -> StructuredFailure:
    if isinstance(exc, PermissionError):
        code = FailureCode.FILE_PERMISSION_ERROR
    elif isinstance(exc, FileNotFoundError):
        code = FailureCode.FILE_NOT_FOUND
    else:
        code = FailureCode.FILE_WRITE_ERROR
    return StructuredFailure.from_code(
        code,
        f"cannot write {path}: {os.strerror(exc.errno) if exc.errno else exc}",
        details={"path": path, "errno": exc.errno},
    )


def _encoding_failure(path: str, exc: UnicodeError) -> StructuredFailure:
    return StructuredFailure.from_code(
        FailureCode.FILE_WRITE_ERROR,
        f"cannot edit {path}: content is not valid UTF-8 ({exc})",
        details={"path": path, "encoding": getattr(exc, "encoding", "utf-8")},
    )


def _preview(text: str) -> str:
    if len(text) <= SEARCH_PREVIEW_CHARS:
        return text
    return text[:SEARCH_PREVIEW_CHARS] + "..."


__all__ = [
    "ApplyReport",
    "EditApplier",
    "EditApplyError",
    "FileApplyResult",
    "NonUniquePolicy",
    "apply_search_replace",
]
