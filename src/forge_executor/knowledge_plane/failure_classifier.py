"""
forge-executor - failure classifier

File: src/forge_executor/knowledge_plane/failure_classifier.py

Purpose
- Map raw error text to a closed ``StructuredFailure`` classification.

What should be included in this file
- ``ClassificationRule`` values and an ordered rule list loaded from YAML.
- A ``Classifier`` protocol so alternate classifiers can replace the default
  without touching call sites.
- Compiler-error remediation hints for common TypeScript diagnostics.

Functional requirements
- ``classify`` is total and deterministic: the first matching rule wins and
  unmatched text yields ``infrastructure:infra_unknown``.
- An optional phase hint tries rules of that phase first.
- Unknown classifications are counted and logged as a warning.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Final, Protocol, cast, runtime_checkable

import structlog
import yaml

from forge_executor.domain.models import (
    FailureCode,
    FailurePhase,
    JSONValue,
    StructuredFailure,
)

DEFAULT_RULES_RESOURCE: Final[str] = "rules/default_rules.yaml"

_RULE_FIELDS: Final[frozenset[str]] = frozenset(
    {"name", "pattern", "code", "context", "recoverable", "suggested_fix"}
)
_REQUIRED_RULE_FIELDS: Final[frozenset[str]] = frozenset({"name", "pattern", "code"})
_MAX_MATCH_PREVIEW = 200


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """One ordered pattern rule; ``phase`` is always the phase of ``code``."""

    name: str
    pattern: re.Pattern[str]
    code: FailureCode
    context: FailurePhase | None = None
    recoverable: bool | None = None
    suggested_fix: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("ClassificationRule.name must be a non-empty string")
        object.__setattr__(self, "code", FailureCode(self.code))
        if self.context is not None:
            object.__setattr__(self, "context", FailurePhase(self.context))
        if isinstance(self.pattern, str):
            object.__setattr__(self, "pattern", re.compile(self.pattern, re.IGNORECASE))

    @property
    def phase(self) -> FailurePhase:
        return self.code.phase

    def applies_to(self, context: FailurePhase | None) -> bool:
        return self.context is None or self.context is context

    def matches(self, text: str) -> re.Match[str] | None:
        return self.pattern.search(text)


@runtime_checkable
class Classifier(Protocol):
    def classify(
        self,
        text: str,
        *,
        context: FailurePhase | None = None,
        details: Mapping[str, JSONValue] | None = None,
    ) -> StructuredFailure: ...


class FailureClassifier:
    """Ordered rule list; the first matching rule wins."""

    def __init__(
        self,
        rules: Iterable[ClassificationRule] | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._rules: list[ClassificationRule] = list(
            rules if rules is not None else load_default_rules()
        )
        _check_unique_names(self._rules)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._unknown_count = 0

    @classmethod
    def from_yaml(cls, path: Path | str, *, logger: Any | None = None) -> FailureClassifier:
        return cls(load_rules(path), logger=logger)

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return tuple(self._rules)

    @property
    def unknown_count(self) -> int:
        """Texts that matched no rule since construction."""

        return self._unknown_count

    def register(self, rule: ClassificationRule, *, first: bool = False) -> None:
        """Add ``rule`` at the end (or the front, to take precedence)."""

        if any(item.name == rule.name for item in self._rules):
            raise ValueError(f"classification rule {rule.name!r} is already registered")
        if first:
            self._rules.insert(0, rule)
        else:
            self._rules.append(rule)

    def classify(
        self,
        text: str,
        *,
        context: FailurePhase | None = None,
        details: Mapping[str, JSONValue] | None = None,
    ) -> StructuredFailure:
        message = text.strip() if isinstance(text, str) else ""
        if not message:
            message = "empty error text"

        for rule in self._ordered(context):
            match = rule.matches(message)
            if match is None:
                continue
            merged: dict[str, JSONValue] = dict(details or {})
            merged["rule"] = rule.name
            return StructuredFailure.from_code(
                rule.code,
                message,
                details=merged,
                recoverable=rule.recoverable,
                suggested_fix=rule.suggested_fix or fix_hint_for(rule.code, message),
            )

        self._unknown_count += 1
        self._logger.warning(
            "failure_classifier_unknown",
            context=None if context is None else context.value,
            preview=message[:_MAX_MATCH_PREVIEW],
            unknown_count=self._unknown_count,
        )
        return StructuredFailure.from_code(
            FailureCode.INFRA_UNKNOWN,
            message,
            details=dict(details or {}),
        )

    def _ordered(self, context: FailurePhase | None) -> list[ClassificationRule]:
        applicable = [rule for rule in self._rules if rule.applies_to(context)]
        if context is None:
            return applicable
        preferred = [rule for rule in applicable if rule.phase is context]
        return preferred + [rule for rule in applicable if rule.phase is not context]


_TS_NAME_RE: Final[re.Pattern[str]] = re.compile(r"Cannot find name '([^']+)'")
_TS_PROPERTY_RE: Final[re.Pattern[str]] = re.compile(
    r"Property '([^']+)' does not exist on type '([^']+)'"
)


def fix_hint_for(code: FailureCode, message: str) -> str | None:
    """Diagnostic-specific remediation, or ``None`` to keep the code's default."""

    if code is not FailureCode.COMPILE_TYPE_ERROR:
        return None
    upper = message.upper()
    if "TS2304" in upper:
        match = _TS_NAME_RE.search(message)
        if match is not None:
            return f"Import or declare '{match.group(1)}'"
    if "TS2322" in upper:
        return "Check type compatibility and add type assertion or fix type mismatch"
    if "TS2339" in upper:
        match = _TS_PROPERTY_RE.search(message)
        if match is not None:
            return f"Add property '{match.group(1)}' to type '{match.group(2)}' or check for typo"
    if "TS2345" in upper:
        return "Check function argument types and provide correct type"
    if "TS7006" in upper:
        return "Add explicit type annotation to parameter"
    return None


def load_default_rules() -> tuple[ClassificationRule, ...]:
    resource = resources.files("forge_executor.knowledge_plane").joinpath(DEFAULT_RULES_RESOURCE)
    with resource.open("r", encoding="utf-8") as handle:
        loaded = _safe_load(handle, DEFAULT_RULES_RESOURCE)
    return parse_rules(loaded, source=DEFAULT_RULES_RESOURCE)


def load_rules(path: Path | str) -> tuple[ClassificationRule, ...]:
    rules_path = Path(path)
    with rules_path.open("r", encoding="utf-8") as handle:
        loaded = _safe_load(handle, str(rules_path))
    return parse_rules(loaded, source=rules_path.name)


def parse_rules(payload: object, *, source: str = "<rules>") -> tuple[ClassificationRule, ...]:
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        raise ValueError(
            f"{source}: expected top-level YAML sequence, got {type(payload).__name__}"
        )
    rules = tuple(
        _parse_rule(item, location=f"{source}[{index}]") for index, item in enumerate(payload)
    )
    _check_unique_names(rules)
    return rules


def _safe_load(handle: Any, source: str) -> object:
    try:
        return cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise ValueError(f"{source}: invalid YAML ({exc})") from exc


def _parse_rule(value: object, *, location: str) -> ClassificationRule:
    if not isinstance(value, Mapping):
        raise ValueError(f"{location}: expected mapping, got {type(value).__name__}")
    keys = {str(key) for key in value}
    missing = sorted(_REQUIRED_RULE_FIELDS - keys)
    if missing:
        raise ValueError(f"{location}: missing required fields {missing}")
    unknown = sorted(keys - _RULE_FIELDS)
    if unknown:
        raise ValueError(f"{location}: unknown fields {unknown}")

    pattern_raw = value["pattern"]
    if not isinstance(pattern_raw, str) or not pattern_raw:
        raise ValueError(f"{location}.pattern: must be a non-empty string")
    try:
        pattern = re.compile(pattern_raw, re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"{location}.pattern: invalid regular expression ({exc})") from exc

    try:
        code = FailureCode(value["code"])
    except ValueError as exc:
        raise ValueError(f"{location}.code: unknown failure code {value['code']!r}") from exc

    context_raw = value.get("context")
    try:
        context = FailurePhase(context_raw) if context_raw is not None else None
    except ValueError as exc:
        raise ValueError(f"{location}.context: unknown phase {context_raw!r}") from exc

    recoverable = value.get("recoverable")
    if recoverable is not None and not isinstance(recoverable, bool):
        raise ValueError(f"{location}.recoverable: expected boolean")
    suggested_fix = value.get("suggested_fix")
    if suggested_fix is not None and (not isinstance(suggested_fix, str) or not suggested_fix):
        raise ValueError(f"{location}.suggested_fix: expected non-empty string")

    return ClassificationRule(
        name=str(value["name"]),
        pattern=pattern,
        code=code,
        context=context,
        recoverable=recoverable,
        suggested_fix=suggested_fix,
    )


def _check_unique_names(rules: Iterable[ClassificationRule]) -> None:
    seen: set[str] = set()
    for rule in rules:
        if rule.name in seen:
            raise ValueError(f"duplicate classification rule name {rule.name!r}")
        seen.add(rule.name)


__all__ = [
    "DEFAULT_RULES_RESOURCE",
    "ClassificationRule",
    "Classifier",
    "FailureClassifier",
    "fix_hint_for",
    "load_default_rules",
    "load_rules",
    "parse_rules",
]
