"""Parse compiler and type-checker output into ``Diagnostic`` records."""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import PurePosixPath
from typing import Final

from forge_executor.domain.models import Diagnostic

# src/app.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.
_TSC_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<file>[^\s(][^(]*?)\((?P<line>\d+),(?P<column>\d+)\):\s*"
    r"(?P<severity>error|warning)\s+(?P<code>TS\d+):\s*(?P<message>.+)$"
)
# src/app.ts:12:5 - error TS2322: Type 'string' is not assignable to type 'number'.
_TSC_PRETTY_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<file>[^\s:][^:]*?):(?P<line>\d+):(?P<column>\d+)\s+-\s+"
    r"(?P<severity>error|warning)\s+(?P<code>TS\d+):\s*(?P<message>.+)$"
)
# src/app.py:12: error: Incompatible return value type  [return-value]
_MYPY_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<file>[^\s:][^:]*?):(?P<line>\d+):(?:(?P<column>\d+):)?\s*"
    r"(?P<severity>error|warning):\s*(?P<message>.+?)(?:\s+\[(?P<code>[a-z0-9-]+)\])?$"
)
_GLOBAL_TSC_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<severity>error|warning)\s+(?P<code>TS\d+):\s*(?P<message>.+)$"
)
_ANSI_RE: Final[re.Pattern[str]] = re.compile(r"\x1b\[[0-9;]*m")

_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (_TSC_RE, _TSC_PRETTY_RE, _MYPY_RE)


def parse_diagnostics(output: str) -> tuple[Diagnostic, ...]:
    """Extract diagnostics in tsc, tsc ``--pretty`` or mypy format.

    Continuation lines (tsc's indented elaborations, pretty-mode code frames)
    are ignored. Duplicate findings are collapsed; order follows the output.
    """

    found: list[Diagnostic] = []
    seen: set[tuple[str, int, int, str, str]] = set()
    for raw_line in _ANSI_RE.sub("", output).splitlines():
        line = raw_line.rstrip()
        if not line or line[0].isspace():
            continue
        diagnostic = _parse_line(line)
        if diagnostic is None:
            continue
        key = (
            diagnostic.file,
            diagnostic.line,
            diagnostic.column,
            diagnostic.code,
            diagnostic.message,
        )
        if key in seen:
            continue
        seen.add(key)
        found.append(diagnostic)
    return tuple(found)


def _parse_line(line: str) -> Diagnostic | None:
    for pattern in _PATTERNS:
        match = pattern.match(line)
        if match is None:
            continue
        column = match.group("column")
        return Diagnostic(
            file=normalize_diagnostic_path(match.group("file")),
            line=int(match.group("line")),
            column=int(column) if column else 0,
            code=match.group("code") or "",
            message=match.group("message").strip(),
            severity=match.group("severity"),
        )

    match = _GLOBAL_TSC_RE.match(line)
    if match is not None:
        return Diagnostic(
            file="",
            line=0,
            code=match.group("code"),
            message=match.group("message").strip(),
            severity=match.group("severity"),
        )
    return None


def normalize_diagnostic_path(raw: str) -> str:
    cleaned = raw.strip().replace("\\", "/")
    parts = [part for part in PurePosixPath(cleaned).parts if part not in {"", "."}]
    return "/".join(parts) if parts else cleaned


def errors_only(diagnostics: Iterable[Diagnostic]) -> tuple[Diagnostic, ...]:
    return tuple(item for item in diagnostics if item.severity == "error")


def new_since_baseline(
    diagnostics: Iterable[Diagnostic],
    baseline: Iterable[Diagnostic],
) -> tuple[Diagnostic, ...]:
    """Diagnostics whose ``(file, code, message)`` fingerprint is not in ``baseline``.

    Fingerprints are counted, so a second identical error in the same file is
    new even when one copy pre-existed.
    """

    remaining: dict[tuple[str, str, str], int] = {}
    for item in baseline:
        remaining[item.fingerprint] = remaining.get(item.fingerprint, 0) + 1

    fresh: list[Diagnostic] = []
    for item in diagnostics:
        count = remaining.get(item.fingerprint, 0)
        if count:
            remaining[item.fingerprint] = count - 1
            continue
        fresh.append(item)
    return tuple(fresh)


def format_diagnostics(diagnostics: Iterable[Diagnostic], *, limit: int | None = None) -> str:
    rendered = [item.render() for item in diagnostics]
    if limit is not None and len(rendered) > limit:
        hidden = len(rendered) - limit
        rendered = [*rendered[:limit], f"... and {hidden} more"]
    return "\n".join(rendered)


__all__ = [
    "errors_only",
    "format_diagnostics",
    "new_since_baseline",
    "normalize_diagnostic_path",
    "parse_diagnostics",
]
