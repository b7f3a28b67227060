from __future__ import annotations

from forge_executor.domain.models import Diagnostic
from forge_executor.verification_plane.diagnostics import (
    errors_only,
    format_diagnostics,
    new_since_baseline,
    normalize_diagnostic_path,
    parse_diagnostics,
)

TSC_OUTPUT = """\
src/routes.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.
  The expected type comes from property 'port'.
src/routes.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.
.\\src\\db.ts(3,1): warning TS6133: 'x' is declared but its value is never read.
error TS18003: No inputs were found in config file 'tsconfig.json'.
Found 2 errors.
"""


def test_parses_plain_tsc_output_and_collapses_duplicates() -> None:
    diagnostics = parse_diagnostics(TSC_OUTPUT)

    assert diagnostics == (
        Diagnostic(
            file="src/routes.ts",
            line=12,
            column=5,
            code="TS2322",
            message="Type 'string' is not assignable to type 'number'.",
        ),
        Diagnostic(
            file="src/db.ts",
            line=3,
            column=1,
            code="TS6133",
            message="'x' is declared but its value is never read.",
            severity="warning",
        ),
        Diagnostic(
            file="",
            line=0,
            code="TS18003",
            message="No inputs were found in config file 'tsconfig.json'.",
        ),
    )


def test_parses_pretty_tsc_output_with_ansi_colors() -> None:
    output = (
        "\x1b[96msrc/app.ts\x1b[0m:\x1b[93m4\x1b[0m:\x1b[93m10\x1b[0m - "
        "\x1b[91merror\x1b[0m\x1b[90m TS2304: \x1b[0mCannot find name 'express'.\n"
        "\n"
        "4 import express from 'express';\n"
        "           ~~~~~~~\n"
    )

    (diagnostic,) = parse_diagnostics(output)

    assert diagnostic.file == "src/app.ts"
    assert (diagnostic.line, diagnostic.column) == (4, 10)
    assert diagnostic.code == "TS2304"
    assert diagnostic.message == "Cannot find name 'express'."


def test_parses_mypy_output() -> None:
    output = (
        "src/app.py:12: error: Incompatible return value type  [return-value]\n"
        "src/app.py:20:7: note: See https://mypy.readthedocs.io\n"
        "Found 1 error in 1 file (checked 3 source files)\n"
    )

    (diagnostic,) = parse_diagnostics(output)

    assert diagnostic.file == "src/app.py"
    assert diagnostic.line == 12
    assert diagnostic.code == "return-value"
    assert diagnostic.message == "Incompatible return value type"


def test_unrecognized_output_yields_nothing() -> None:
    assert parse_diagnostics("Everything is fine\nDone in 1.2s\n") == ()


def test_baseline_matching_ignores_line_shifts_and_counts_duplicates() -> None:
    baseline = [Diagnostic("a.ts", 10, "TS2322", "bad type")]
    current = [
        Diagnostic("a.ts", 14, "TS2322", "bad type"),
        Diagnostic("a.ts", 30, "TS2322", "bad type"),
        Diagnostic("b.ts", 1, "TS2304", "missing name"),
    ]

    fresh = new_since_baseline(current, baseline)

    assert [(item.file, item.line) for item in fresh] == [("a.ts", 30), ("b.ts", 1)]


def test_errors_only_drops_warnings() -> None:
    items = [
        Diagnostic("a.ts", 1, "TS1", "e"),
        Diagnostic("a.ts", 2, "TS2", "w", severity="warning"),
    ]

    assert errors_only(items) == (items[0],)


def test_format_diagnostics_caps_the_listing() -> None:
    items = [Diagnostic("a.ts", line, "TS1", "e") for line in range(1, 5)]

    assert format_diagnostics(items, limit=2) == (
        "a.ts:1: error TS1: e\na.ts:2: error TS1: e\n... and 2 more"
    )


def test_normalize_diagnostic_path() -> None:
    assert normalize_diagnostic_path(".\\src\\app.ts") == "src/app.ts"
    assert normalize_diagnostic_path("./lib/./x.ts") == "lib/x.ts"
