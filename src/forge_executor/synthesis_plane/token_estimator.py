"""
forge-executor - token estimation

File: src/forge_executor/synthesis_plane/token_estimator.py

Purpose
- Approximate token counts for prose and source code without an external tokenizer.

Functional requirements
- Prose: alphanumerics count one token per 4 chars, whitespace one per 6,
  everything else one per 2 (each class rounded up).
- Source code: one token per 3 chars, rounded up.
- Empty text is always 0 tokens.

Non-functional requirements
- Pure and deterministic; slightly conservative so budgets do not overflow.
"""

from __future__ import annotations

import math
import re
from pathlib import PurePosixPath
from typing import Final, Protocol, runtime_checkable

from forge_executor.constants import SOURCE_CODE_SUFFIXES

_ALNUM_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9]")
_WHITESPACE_RE: Final[re.Pattern[str]] = re.compile(r"\s")

_CHARS_PER_ALNUM_TOKEN: Final[int] = 4
_CHARS_PER_WHITESPACE_TOKEN: Final[int] = 6
_CHARS_PER_SYMBOL_TOKEN: Final[int] = 2
_CHARS_PER_CODE_TOKEN: Final[int] = 3


@runtime_checkable
class TokenEstimator(Protocol):
    """Pluggable token estimator seam."""

    def estimate(self, text: str) -> int: ...

    def estimate_code(self, text: str) -> int: ...

    def estimate_for_path(self, path: str, text: str) -> int: ...


class HeuristicTokenEstimator:
    """Character-class token estimator."""

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        alnum = len(_ALNUM_RE.findall(text))
        whitespace = len(_WHITESPACE_RE.findall(text))
        symbols = len(text) - alnum - whitespace
        return (
            math.ceil(alnum / _CHARS_PER_ALNUM_TOKEN)
            + math.ceil(whitespace / _CHARS_PER_WHITESPACE_TOKEN)
            + math.ceil(symbols / _CHARS_PER_SYMBOL_TOKEN)
        )

    def estimate_code(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / _CHARS_PER_CODE_TOKEN)

    def estimate_for_path(self, path: str, text: str) -> int:
        if is_source_path(path):
            return self.estimate_code(text)
        return self.estimate(text)


def is_source_path(path: str) -> bool:
    """Return ``True`` when ``path`` has a recognised source-code suffix."""

    return PurePosixPath(path).suffix.lower() in SOURCE_CODE_SUFFIXES


def count_lines(text: str) -> int:
    return text.count("\n") + 1


DEFAULT_ESTIMATOR: Final[HeuristicTokenEstimator] = HeuristicTokenEstimator()


def estimate_tokens(text: str) -> int:
    """Module-level shortcut for prose estimation."""

    return DEFAULT_ESTIMATOR.estimate(text)


def estimate_code_tokens(text: str) -> int:
    return DEFAULT_ESTIMATOR.estimate_code(text)


__all__ = [
    "DEFAULT_ESTIMATOR",
    "HeuristicTokenEstimator",
    "TokenEstimator",
    "count_lines",
    "estimate_code_tokens",
    "estimate_tokens",
    "is_source_path",
]
