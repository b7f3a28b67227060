"""Stable constants shared across executor planes."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1
DEFAULT_CONFIG_FILE: Final[str] = "forge.toml"
ENV_PREFIX: Final[str] = "FORGE_"

# Context budget defaults (tokens).
DEFAULT_TOTAL_BUDGET: Final[int] = 40_000
DEFAULT_OUTPUT_RESERVE_RATIO: Final[float] = 0.20
DEFAULT_HIGH_PRIORITY_SHARE: Final[float] = 0.80
DEFAULT_MEDIUM_PRIORITY_SHARE: Final[float] = 0.80
DEFAULT_LOW_MIN_REMAINING: Final[int] = 500
DEFAULT_LOW_FILE_CAP: Final[int] = 1_000

# Extraction limits.
TRUNCATE_CHAR_LIMIT: Final[int] = 3_000
TRUNCATE_BREAK_RATIO: Final[float] = 0.80
NON_CODE_SIGNATURE_LINES: Final[int] = 50
HEADER_COMMENT_MAX_CHARS: Final[int] = 500
SUMMARY_EXPORT_LIMIT: Final[int] = 10

# Generation defaults.
SUBMIT_TOOL_NAME: Final[str] = "submit_code_changes"
DEFAULT_MAX_OUTPUT_TOKENS: Final[int] = 8_000
DEFAULT_GENERATION_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_TASK_DEADLINE_SECONDS: Final[float] = 900.0

# Validation and self-heal defaults.
DEFAULT_CHECK_COMMAND: Final[tuple[str, ...]] = ("npx", "tsc", "--noEmit")
DEFAULT_CHECK_MARKER_FILE: Final[str] = "tsconfig.json"
DEFAULT_CHECK_TIMEOUT_SECONDS: Final[float] = 60.0
DEFAULT_MAX_HEAL_ATTEMPTS: Final[int] = 2
DEFAULT_MAX_HEAL_DIAGNOSTICS: Final[int] = 10
SEARCH_PREVIEW_CHARS: Final[int] = 120

SOURCE_CODE_SUFFIXES: Final[frozenset[str]] = frozenset(
    {".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py"}
)

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CHECK_COMMAND",
    "DEFAULT_CHECK_MARKER_FILE",
    "DEFAULT_CHECK_TIMEOUT_SECONDS",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_GENERATION_TIMEOUT_SECONDS",
    "DEFAULT_HIGH_PRIORITY_SHARE",
    "DEFAULT_LOW_FILE_CAP",
    "DEFAULT_LOW_MIN_REMAINING",
    "DEFAULT_MAX_HEAL_ATTEMPTS",
    "DEFAULT_MAX_HEAL_DIAGNOSTICS",
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "DEFAULT_MEDIUM_PRIORITY_SHARE",
    "DEFAULT_OUTPUT_RESERVE_RATIO",
    "DEFAULT_TASK_DEADLINE_SECONDS",
    "DEFAULT_TOTAL_BUDGET",
    "ENV_PREFIX",
    "HEADER_COMMENT_MAX_CHARS",
    "NON_CODE_SIGNATURE_LINES",
    "SEARCH_PREVIEW_CHARS",
    "SOURCE_CODE_SUFFIXES",
    "SUBMIT_TOOL_NAME",
    "SUMMARY_EXPORT_LIMIT",
    "TRUNCATE_BREAK_RATIO",
    "TRUNCATE_CHAR_LIMIT",
]
