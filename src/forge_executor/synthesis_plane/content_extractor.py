"""
forge-executor - content extraction

File: src/forge_executor/synthesis_plane/content_extractor.py

Purpose
- Reduce a file's content to one of four fidelity levels so it fits a token slice.

What should be included in this file
- ``full``: unchanged content.
- ``signatures``: imports, exports, type declarations, function and class
  signatures with bodies elided, plus whole route-handler and module-level
  ``const`` declaration bodies (common edit anchors).
- ``truncated``: head and tail cut at structural boundaries.
- ``summary``: path, one-line description, line count, export list.
- Greedy level selection from highest fidelity downward.

Functional requirements
- Extraction is a pure function of (path, content, level); nothing is cached.
- Non-code files keep their first 50 lines at the ``signatures`` level.

Non-functional requirements
- Line-based heuristics only; no parser or AST dependency.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Final

from forge_executor.constants import (
    HEADER_COMMENT_MAX_CHARS,
    NON_CODE_SIGNATURE_LINES,
    SUMMARY_EXPORT_LIMIT,
    TRUNCATE_BREAK_RATIO,
    TRUNCATE_CHAR_LIMIT,
)
from forge_executor.domain.models import (
    EXTRACTION_ORDER,
    ExtractedFile,
    ExtractionLevel,
    FileRole,
    Priority,
)
from forge_executor.synthesis_plane.token_estimator import (
    DEFAULT_ESTIMATOR,
    TokenEstimator,
    count_lines,
)

_BRACE_SUFFIXES: Final[frozenset[str]] = frozenset({".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"})
_PYTHON_SUFFIXES: Final[frozenset[str]] = frozenset({".py", ".pyi"})

_ELIDED_BODY: Final[str] = "{ ... }"
_HEAD_SHARE: Final[float] = 0.75

# Brace-language patterns (TypeScript / JavaScript).
_ROUTE_RE = re.compile(r"^(?:app|router)\.(?:get|post|put|patch|delete|use)\s*\(")
_EXPORT_TYPE_RE = re.compile(r"^export\s+(?:declare\s+)?(?:type|interface|enum)\s+\w+")
_EXPORT_FUNCTION_RE = re.compile(r"^export\s+(?:default\s+)?(?:async\s+)?function\b")
_EXPORT_CLASS_RE = re.compile(r"^export\s+(?:default\s+)?(?:abstract\s+)?class\b")
_EXPORT_VALUE_RE = re.compile(r"^export\s+(?:const|let|var)\s+\w+")
_LOCAL_TYPE_RE = re.compile(r"^(?:declare\s+)?(?:type|interface|enum)\s+\w+")
_LOCAL_FUNCTION_RE = re.compile(r"^(?:async\s+)?function\b")
_LOCAL_CLASS_RE = re.compile(r"^(?:abstract\s+)?class\s+\w+")
_MODULE_DECLARATION_RE = re.compile(r"^(?:const|let)\s+\w+\s*(?::[^=]+)?=")
_METHOD_SIGNATURE_RE = re.compile(
    r"^(?:(?:public|private|protected|static|async|readonly|abstract|override|get|set)\s+)*"
    r"\*?[\w$#]+\s*(?:<[^>]*>)?\s*\(.*\).*\{$"
)
_BRACE_EXPORT_NAME_RE = re.compile(
    r"^export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:const|let|var|function|class|type|interface|enum)\s+([\w$]+)",
    re.MULTILINE,
)
_CLOSING_BRACE_RE = re.compile(r"^}\s*;?\s*$")

# Python patterns.
_PY_IMPORT_RE = re.compile(r"^(?:import|from)\s+\S")
_PY_DEF_RE = re.compile(r"^(?:async\s+)?def\s+\w+|^class\s+\w+")
_PY_ROUTE_DECORATOR_RE = re.compile(
    r"^@(?:app|router|bp|blueprint)\.(?:get|post|put|patch|delete|route|api_route)\s*\("
)
_PY_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_]\w*\s*(?::[^=]+)?=(?!=)")
_PY_EXPORT_NAME_RE = re.compile(r"^(?:async\s+)?(?:def|class)\s+([A-Za-z]\w*)", re.MULTILINE)
_PY_DOCSTRING_RE = re.compile(r'^\s*(?:"""|\'\'\')(.*?)(?:"""|\'\'\')', re.DOTALL)


@dataclass(frozen=True, slots=True)
class ExtractionVariant:
    level: ExtractionLevel
    content: str
    tokens: int


@dataclass(frozen=True, slots=True)
class ExtractionSet:
    """All fidelity levels computed for one file."""

    path: str
    variants: tuple[ExtractionVariant, ...]

    def variant(self, level: ExtractionLevel) -> ExtractionVariant:
        for item in self.variants:
            if item.level is level:
                return item
        if level is ExtractionLevel.EXCLUDED:
            return ExtractionVariant(level=level, content="", tokens=0)
        raise KeyError(level)

    @property
    def full_tokens(self) -> int:
        return self.variant(ExtractionLevel.FULL).tokens

    def below(self, level: ExtractionLevel) -> tuple[ExtractionVariant, ...]:
        """Variants of strictly lower fidelity than ``level``, best first."""

        return tuple(item for item in self.variants if item.level.fidelity < level.fidelity)


class ContentExtractor:
    """Computes extraction levels and picks the best one for a token slice."""

    def __init__(
        self,
        *,
        estimator: TokenEstimator | None = None,
        truncate_chars: int = TRUNCATE_CHAR_LIMIT,
    ) -> None:
        if truncate_chars <= 0:
            raise ValueError("truncate_chars must be > 0")
        self._estimator = estimator if estimator is not None else DEFAULT_ESTIMATOR
        self._truncate_chars = truncate_chars

    def extract(
        self,
        path: str,
        content: str,
        level: ExtractionLevel | str,
        *,
        role: FileRole = FileRole.REFERENCE,
        priority: Priority = Priority.MEDIUM,
    ) -> ExtractedFile:
        resolved = ExtractionLevel(level)
        text = self.render(path, content, resolved)
        return ExtractedFile(
            path=path,
            content=text,
            level=resolved,
            tokens=self._count(path, text, resolved),
            role=role,
            priority=priority,
        )

    def render(self, path: str, content: str, level: ExtractionLevel) -> str:
        if level is ExtractionLevel.FULL:
            return content
        if level is ExtractionLevel.SIGNATURES:
            return extract_signatures(path, content)
        if level is ExtractionLevel.TRUNCATED:
            return smart_truncate(path, content, self._truncate_chars)
        if level is ExtractionLevel.SUMMARY:
            return summarize(path, content)
        return ""

    def extract_all(self, path: str, content: str) -> ExtractionSet:
        variants = []
        for level in EXTRACTION_ORDER:
            text = self.render(path, content, level)
            variants.append(
                ExtractionVariant(level=level, content=text, tokens=self._count(path, text, level))
            )
        return ExtractionSet(path=path, variants=tuple(variants))

    def select_for_budget(self, extraction: ExtractionSet, max_tokens: int) -> ExtractionVariant:
        """Return the highest-fidelity variant within ``max_tokens``, else ``excluded``."""

        if max_tokens > 0 or extraction.full_tokens == 0:
            for variant in extraction.variants:
                if variant.tokens <= max_tokens:
                    return variant
        return extraction.variant(ExtractionLevel.EXCLUDED)

    def _count(self, path: str, text: str, level: ExtractionLevel) -> int:
        if level is ExtractionLevel.SUMMARY:
            return self._estimator.estimate(text)
        return self._estimator.estimate_for_path(path, text)


def extract_signatures(path: str, content: str) -> str:
    """Signature-level view of ``content``; non-code files keep their first lines."""

    suffix = PurePosixPath(path).suffix.lower()
    if suffix in _BRACE_SUFFIXES:
        return _brace_signatures(content)
    if suffix in _PYTHON_SUFFIXES:
        return _python_signatures(content)
    return "\n".join(content.split("\n")[:NON_CODE_SIGNATURE_LINES])


def smart_truncate(path: str, content: str, max_chars: int = TRUNCATE_CHAR_LIMIT) -> str:
    """Keep a head and a tail of ``content`` cut at structural boundaries."""

    if len(content) <= max_chars:
        return content

    lines = content.split("\n")
    python = PurePosixPath(path).suffix.lower() in _PYTHON_SUFFIXES
    head_limit = int(max_chars * _HEAD_SHARE)
    tail_limit = max_chars - head_limit

    head: list[str] = []
    head_chars = 0
    last_break = 0
    last_break_chars = 0
    for line in lines:
        if head_chars + len(line) + 1 > head_limit:
            break
        head.append(line)
        head_chars += len(line) + 1
        if _is_structural_break(line, python=python):
            last_break = len(head)
            last_break_chars = head_chars
    if last_break_chars > head_limit * TRUNCATE_BREAK_RATIO:
        head = head[:last_break]

    tail: list[str] = []
    tail_chars = 0
    for line in reversed(lines[len(head) :]):
        if tail_chars + len(line) + 1 > tail_limit:
            break
        tail.append(line)
        tail_chars += len(line) + 1
    tail.reverse()
    # Start the tail on a declaration boundary when one is available.
    for offset, line in enumerate(tail):
        if line and not line[0].isspace() and not _CLOSING_BRACE_RE.match(line):
            tail = tail[offset:]
            break

    omitted = len(lines) - len(head) - len(tail)
    marker = "#" if python else "//"
    parts = ["\n".join(head), f"{marker} ... ({omitted} lines truncated)"]
    if tail:
        parts.append("\n".join(tail))
    return "\n".join(parts)


def summarize(path: str, content: str) -> str:
    """One-screen summary: path, description, line count and exports."""

    suffix = PurePosixPath(path).suffix.lower()
    description = _description(content, python=suffix in _PYTHON_SUFFIXES)
    if suffix in _PYTHON_SUFFIXES:
        names = [match.group(1) for match in _PY_EXPORT_NAME_RE.finditer(content)]
    else:
        names = [match.group(1) for match in _BRACE_EXPORT_NAME_RE.finditer(content)]

    exports = ", ".join(names[:SUMMARY_EXPORT_LIMIT])
    if len(names) > SUMMARY_EXPORT_LIMIT:
        exports += f" (+{len(names) - SUMMARY_EXPORT_LIMIT} more)"

    line_count = count_lines(content)
    lines = [f"File: {path}"]
    if description:
        lines.append(f"Description: {description}")
    lines.append(f"Lines: {line_count}")
    lines.append(f"Exports: {exports}")
    return "\n".join(lines)


def _brace_signatures(content: str) -> str:
    lines = content.split("\n")
    kept: list[str] = []
    pending: list[str] | None = None
    index = 0

    while index < len(lines):
        line = lines[index]
        stripped = line.strip()

        if not stripped or stripped.startswith("//"):
            index += 1
            continue

        if pending is not None:
            pending.append(line)
            joined = "\n".join(pending)
            balanced = _parens_balanced(joined)
            if balanced and "{" in stripped:
                kept.append(f"{joined[: joined.rfind('{')].rstrip()} {_ELIDED_BODY}")
                pending = None
                index = _block_end(lines, index)
            elif balanced and stripped.endswith(";"):
                kept.append(joined)
                pending = None
                index += 1
            else:
                index += 1
            continue

        if _ROUTE_RE.match(stripped):
            end = _block_end(lines, index, brackets=True)
            kept.append("// Route handler:\n" + "\n".join(lines[index:end]))
            index = end
        elif _EXPORT_TYPE_RE.match(stripped) or _LOCAL_TYPE_RE.match(stripped):
            end = _block_end(lines, index)
            kept.append("\n".join(lines[index:end]))
            index = end
        elif _EXPORT_FUNCTION_RE.match(stripped) or _LOCAL_FUNCTION_RE.match(stripped):
            balanced = _parens_balanced(stripped)
            if balanced and "{" in stripped:
                kept.append(f"{line[: line.rfind('{')].rstrip()} {_ELIDED_BODY}")
                index = _block_end(lines, index)
            elif balanced and stripped.endswith(";"):
                kept.append(line)
                index += 1
            else:
                pending = [line]
                index += 1
        elif _EXPORT_CLASS_RE.match(stripped) or _LOCAL_CLASS_RE.match(stripped):
            signature, index = _class_signature(lines, index)
            kept.append(signature)
        elif _EXPORT_VALUE_RE.match(stripped) or _MODULE_DECLARATION_RE.match(stripped):
            end = _block_end(lines, index, brackets=True)
            if "=>" in stripped:
                arrow = line.index("=>")
                kept.append(f"{line[: arrow + 2].rstrip()} {_ELIDED_BODY}")
            else:
                kept.append("\n".join(lines[index:end]))
            index = end
        elif stripped.startswith(("export {", "export *", "export default ")):
            end = _block_end(lines, index)
            kept.append("\n".join(lines[index:end]))
            index = end
        elif stripped.startswith("import "):
            end = index + 1
            if "{" in stripped and "}" not in stripped:
                end = _block_end(lines, index)
            kept.append("\n".join(lines[index:end]))
            index = end
        else:
            index += 1

    header = _header_comment(content)
    body = "\n\n".join(kept)
    return f"{header}\n\n{body}" if header else body


def _class_signature(lines: list[str], start: int) -> tuple[str, int]:
    """Class header, fields and method signatures; returns the text and the next index."""

    kept = [lines[start]]
    depth = _depth_delta(lines[start])
    opened = depth > 0
    index = start + 1
    if "{" in lines[start] and depth <= 0:
        return lines[start], index
    while index < len(lines):
        line = lines[index]
        stripped = line.strip()
        if depth == 1 and _METHOD_SIGNATURE_RE.match(stripped):
            kept.append(f"{line.rstrip()[:-1].rstrip()} {_ELIDED_BODY}")
            index = _block_end(lines, index)
            continue
        depth += _depth_delta(line)
        opened = opened or depth > 0
        if stripped:
            kept.append(line)
        index += 1
        if opened and depth <= 0:
            break
    return "\n".join(kept), index


def _python_signatures(content: str) -> str:
    lines = content.split("\n")
    kept: list[str] = []
    index = 0

    while index < len(lines):
        line = lines[index]
        stripped = line.strip()
        indent = len(line) - len(line.lstrip())

        if not stripped or stripped.startswith("#"):
            index += 1
            continue

        if _PY_ROUTE_DECORATOR_RE.match(stripped):
            end = _python_block_end(lines, index, indent)
            kept.append("# Route handler:\n" + "\n".join(lines[index:end]).rstrip())
            index = end
        elif indent == 0 and _PY_IMPORT_RE.match(stripped):
            end = _block_end(lines, index, brackets=True)
            kept.append("\n".join(lines[index:end]))
            index = end
        elif _PY_DEF_RE.match(stripped):
            signature = [line]
            index += 1
            while not signature[-1].rstrip().endswith(":") and index < len(lines):
                signature.append(lines[index])
                index += 1
            text = "\n".join(signature)
            kept.append(text if stripped.startswith("class ") else f"{text} ...")
        elif indent == 0 and _PY_ASSIGNMENT_RE.match(stripped):
            end = _block_end(lines, index, brackets=True)
            kept.append("\n".join(lines[index:end]))
            index = end
        else:
            index += 1

    header = _header_comment(content, python=True)
    body = "\n".join(kept)
    return f"{header}\n\n{body}" if header else body


def _python_block_end(lines: list[str], start: int, indent: int) -> int:
    """End of a decorated definition: the first later line at or above ``indent``."""

    index = start + 1
    while index < len(lines) and lines[index].strip().startswith("@"):
        index += 1
    index += 1
    while index < len(lines):
        line = lines[index]
        if line.strip() and len(line) - len(line.lstrip()) <= indent:
            break
        index += 1
    return index


def _block_end(lines: list[str], start: int, *, brackets: bool = False) -> int:
    """Index of the first line after the balanced block opened on ``start``."""

    depth = _depth_delta(lines[start], brackets=brackets)
    index = start + 1
    while depth > 0 and index < len(lines):
        depth += _depth_delta(lines[index], brackets=brackets)
        index += 1
    return index


def _parens_balanced(text: str) -> bool:
    return text.count("(") <= text.count(")")


def _depth_delta(line: str, *, brackets: bool = False) -> int:
    delta = line.count("{") - line.count("}")
    if brackets:
        delta += line.count("(") - line.count(")")
        delta += line.count("[") - line.count("]")
    return delta


def _is_structural_break(line: str, *, python: bool) -> bool:
    if python:
        return not line.strip()
    return bool(_CLOSING_BRACE_RE.match(line))


def _header_comment(content: str, *, python: bool = False) -> str:
    if python:
        match = _PY_DOCSTRING_RE.match(content)
        if match is not None and match.end() < HEADER_COMMENT_MAX_CHARS:
            return content[: match.end()].strip()
        return ""
    if content.startswith("/**"):
        end = content.find("*/")
        if end != -1 and end < HEADER_COMMENT_MAX_CHARS:
            return content[: end + 2]
    return ""


def _description(content: str, *, python: bool) -> str:
    if python:
        match = _PY_DOCSTRING_RE.match(content)
        if match is not None:
            return _first_line(match.group(1))
    elif content.startswith("/**"):
        end = content.find("*/")
        if end != -1 and end < HEADER_COMMENT_MAX_CHARS:
            body = re.sub(r"(?m)^\s*\*\s?", "", content[3:end])
            return _first_line(body)

    marker = "#" if python else "//"
    for line in content.split("\n")[:5]:
        stripped = line.strip()
        if stripped.startswith(marker) and not stripped.startswith("#!"):
            return stripped[len(marker) :].strip()
    return ""


def _first_line(text: str) -> str:
    for line in text.split("\n"):
        if line.strip():
            return line.strip()
    return ""


__all__ = [
    "ContentExtractor",
    "ExtractionSet",
    "ExtractionVariant",
    "extract_signatures",
    "smart_truncate",
    "summarize",
]
