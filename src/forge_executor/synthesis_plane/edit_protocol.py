"""
forge-executor - edit protocol schema

File: src/forge_executor/synthesis_plane/edit_protocol.py

Purpose
- The fixed contract the generation oracle must produce: a list of file
  operations (``create``, ``modify``, ``edit``) plus an explanation.

What should be included in this file
- Tagged-union operation types and the response container.
- Strict parsing that fails closed with ``ProtocolViolationError``.
- The JSON schema of the ``submit_code_changes`` tool.

Functional requirements
- Accept a mapping or JSON text; reject unknown fields, wrong types, empty
  edit lists, path traversal and duplicate paths.
- Never repair malformed payloads.

Non-functional requirements
- Deterministic error reasons for logging and classification.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import ClassVar, Final, NoReturn

from forge_executor.constants import SUBMIT_TOOL_NAME
from forge_executor.domain.errors import ProtocolViolationError
from forge_executor.domain.models import EditAction, FailureCode, JSONValue

_TOP_LEVEL_FIELDS: Final[frozenset[str]] = frozenset({"files", "explanation"})
_OPERATION_FIELDS: Final[frozenset[str]] = frozenset({"path", "action", "content", "edits"})
_EDIT_FIELDS: Final[frozenset[str]] = frozenset({"search", "replace"})


@dataclass(frozen=True, slots=True)
class SearchReplace:
    """One ordered search/replace pair; ``search`` must match verbatim."""

    search: str
    replace: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"search": self.search, "replace": self.replace}


@dataclass(frozen=True, slots=True)
class CreateOperation:
    action: ClassVar[EditAction] = EditAction.CREATE

    path: str
    content: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "action": self.action.value, "content": self.content}


@dataclass(frozen=True, slots=True)
class ModifyOperation:
    """Full overwrite; only valid for files the oracle saw at ``full`` fidelity."""

    action: ClassVar[EditAction] = EditAction.MODIFY

    path: str
    content: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "action": self.action.value, "content": self.content}


@dataclass(frozen=True, slots=True)
class EditOperation:
    action: ClassVar[EditAction] = EditAction.EDIT

    path: str
    edits: tuple[SearchReplace, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "path": self.path,
            "action": self.action.value,
            "edits": [item.to_dict() for item in self.edits],
        }


FileOperation = CreateOperation | ModifyOperation | EditOperation


@dataclass(frozen=True, slots=True)
class EditResponse:
    """Validated oracle response."""

    operations: tuple[FileOperation, ...]
    explanation: str = ""

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(item.path for item in self.operations)

    def operation_for(self, path: str) -> FileOperation | None:
        for item in self.operations:
            if item.path == path:
                return item
        return None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "files": [item.to_dict() for item in self.operations],
            "explanation": self.explanation,
        }


SUBMIT_TOOL_DESCRIPTION: Final[str] = (
    "Submit the code changes for this task. Use 'edit' with exact search/replace pairs for "
    "existing files; use 'create' for new files; use 'modify' only for files you were shown "
    "in full."
)

SUBMIT_TOOL_SCHEMA: Final[dict[str, JSONValue]] = {
    "type": "object",
    "properties": {
        "files": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path relative to project root"},
                    "action": {"type": "string", "enum": ["create", "modify", "edit"]},
                    "content": {
                        "type": "string",
                        "description": "Full file content for create or modify",
                    },
                    "edits": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "properties": {
                                "search": {
                                    "type": "string",
                                    "description": "Exact text that exists in the file",
                                },
                                "replace": {"type": "string"},
                            },
                            "required": ["search", "replace"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["path", "action"],
                "additionalProperties": False,
            },
        },
        "explanation": {"type": "string"},
    },
    "required": ["files", "explanation"],
    "additionalProperties": False,
}


def submit_tool_definition() -> dict[str, JSONValue]:
    """Tool definition in the shape expected by tool-calling providers."""

    return {
        "name": SUBMIT_TOOL_NAME,
        "description": SUBMIT_TOOL_DESCRIPTION,
        "input_schema": SUBMIT_TOOL_SCHEMA,
    }


def parse_edit_response(payload: Mapping[str, object] | str | bytes) -> EditResponse:
    """Validate an oracle payload into an ``EditResponse``; fails closed."""

    if isinstance(payload, (str, bytes)):
        try:
            decoded = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            _violation("invalid_json", f"response is not valid JSON: {exc}")
        payload = decoded
    if not isinstance(payload, Mapping):
        _violation("not_an_object", f"response must be an object, got {type(payload).__name__}")

    unknown = sorted(str(key) for key in payload if key not in _TOP_LEVEL_FIELDS)
    if unknown:
        _violation("unexpected_field", f"unexpected top-level fields: {unknown}")

    files = payload.get("files")
    if files is None:
        _violation(
            "missing_files",
            "response has no 'files' list",
            code=FailureCode.CODEGEN_NO_OUTPUT,
        )
    if isinstance(files, (str, bytes)) or not isinstance(files, Sequence):
        _violation("invalid_files", "'files' must be a list")
    if not files:
        _violation("empty_files", "'files' must not be empty", code=FailureCode.CODEGEN_NO_OUTPUT)

    explanation = payload.get("explanation", "")
    if explanation is None:
        explanation = ""
    if not isinstance(explanation, str):
        _violation("invalid_explanation", "'explanation' must be a string")

    operations: list[FileOperation] = []
    seen: set[str] = set()
    for index, raw in enumerate(files):
        operation = _parse_operation(raw, f"files[{index}]")
        if operation.path in seen:
            _violation(
                "duplicate_path",
                f"files[{index}]: path {operation.path!r} appears more than once",
                details={"path": operation.path},
            )
        seen.add(operation.path)
        operations.append(operation)

    return EditResponse(operations=tuple(operations), explanation=explanation.strip())


def _parse_operation(raw: object, where: str) -> FileOperation:
    if not isinstance(raw, Mapping):
        _violation("invalid_operation", f"{where}: expected object, got {type(raw).__name__}")

    unknown = sorted(str(key) for key in raw if key not in _OPERATION_FIELDS)
    if unknown:
        _violation("unexpected_field", f"{where}: unexpected fields: {unknown}")

    path = _parse_path(raw.get("path"), f"{where}.path")
    action_raw = raw.get("action")
    try:
        action = EditAction(action_raw)
    except ValueError:
        _violation(
            "unknown_action",
            f"{where}.action: expected create|modify|edit, got {action_raw!r}",
            details={"path": path},
        )

    content = raw.get("content")
    edits = raw.get("edits")

    if action is EditAction.EDIT:
        if content is not None:
            _violation("unexpected_content", f"{where}: 'edit' must not carry 'content'")
        return EditOperation(path=path, edits=_parse_edits(edits, f"{where}.edits", path))

    if edits is not None:
        _violation("unexpected_edits", f"{where}: '{action.value}' must not carry 'edits'")
    if not isinstance(content, str):
        _violation(
            "missing_content",
            f"{where}: '{action.value}' requires string 'content'",
            details={"path": path},
        )
    if action is EditAction.CREATE:
        return CreateOperation(path=path, content=content)
    return ModifyOperation(path=path, content=content)


def _parse_edits(raw: object, where: str, path: str) -> tuple[SearchReplace, ...]:
    if raw is None or isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        _violation(
            "missing_edits",
            f"{where}: 'edit' requires an 'edits' list",
            details={"path": path},
        )
    if not raw:
        _violation("empty_edits", f"{where}: must not be empty", details={"path": path})

    pairs: list[SearchReplace] = []
    for index, item in enumerate(raw):
        item_where = f"{where}[{index}]"
        if not isinstance(item, Mapping):
            _violation("invalid_edit", f"{item_where}: expected object")
        unknown = sorted(str(key) for key in item if key not in _EDIT_FIELDS)
        if unknown:
            _violation("unexpected_field", f"{item_where}: unexpected fields: {unknown}")
        search = item.get("search")
        replace = item.get("replace")
        if not isinstance(search, str) or not search:
            _violation("invalid_edit", f"{item_where}.search must be a non-empty string")
        if not isinstance(replace, str):
            _violation("invalid_edit", f"{item_where}.replace must be a string")
        pairs.append(SearchReplace(search=search, replace=replace))
    return tuple(pairs)


def _parse_path(raw: object, where: str) -> str:
    if not isinstance(raw, str) or not raw.strip():
        _violation("invalid_path", f"{where}: must be a non-empty string")
    cleaned = raw.strip().replace("\\", "/")
    posix = PurePosixPath(cleaned)
    if posix.is_absolute() or any(part == ".." for part in posix.parts):
        _violation("invalid_path", f"{where}: must stay inside the project root: {raw!r}")
    return posix.as_posix()


def _violation(
    reason: str,
    message: str,
    *,
    code: FailureCode = FailureCode.CODEGEN_INVALID_FORMAT,
    details: Mapping[str, JSONValue] | None = None,
) -> NoReturn:
    raise ProtocolViolationError(message, reason=reason, code=code, details=details)


__all__ = [
    "SUBMIT_TOOL_SCHEMA",
    "CreateOperation",
    "EditOperation",
    "EditResponse",
    "FileOperation",
    "ModifyOperation",
    "SearchReplace",
    "parse_edit_response",
    "submit_tool_definition",
]
