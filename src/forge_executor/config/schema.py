"""
forge-executor - configuration schema and validation.

File: src/forge_executor/config/schema.py

Purpose
- Built-in defaults and the strict per-field rules every config layer must
  satisfy once merged.

What should be included in this file
- Schema versioning and migration guidance.
- A declarative field table: section -> key -> check.
- Deterministic deep merge and redaction for logging.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Every field is required once defaults are merged; unknown keys are errors.
- Reject embedded secrets; provider keys are referenced by env var name only.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from forge_executor.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CHECK_COMMAND,
    DEFAULT_CHECK_MARKER_FILE,
    DEFAULT_CHECK_TIMEOUT_SECONDS,
    DEFAULT_GENERATION_TIMEOUT_SECONDS,
    DEFAULT_HIGH_PRIORITY_SHARE,
    DEFAULT_LOW_FILE_CAP,
    DEFAULT_LOW_MIN_REMAINING,
    DEFAULT_MAX_HEAL_ATTEMPTS,
    DEFAULT_MAX_HEAL_DIAGNOSTICS,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_MEDIUM_PRIORITY_SHARE,
    DEFAULT_OUTPUT_RESERVE_RATIO,
    DEFAULT_TASK_DEADLINE_SECONDS,
    DEFAULT_TOTAL_BUDGET,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

NON_UNIQUE_POLICIES: Final[tuple[str, ...]] = ("first_occurrence", "reject_ambiguous")
PROVIDER_NAMES: Final[tuple[str, ...]] = ("anthropic",)
APPROVAL_TRIGGERS: Final[tuple[str, ...]] = (
    "ambiguous_target",
    "high_risk_operation",
    "vague_task",
)
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")

# Config paths resolved relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
# Whole words only, so token *counts* such as ``total_tokens`` stay allowed.
_SECRET_KEY = re.compile(
    r"secret|passw(?:or)?d|(?:^|_)(?:token|api|key|apikey|private|credentials?|auth)(?:_|$)"
)


class MetaConfig(TypedDict):
    schema_version: int


class BudgetConfig(TypedDict):
    total_tokens: int
    output_reserve_ratio: float
    min_output_reserve: int
    high_share: float
    medium_share: float
    low_min_remaining: int
    low_file_cap: int


class EditConfig(TypedDict):
    non_unique_policy: Literal["first_occurrence", "reject_ambiguous"]


class ValidationConfig(TypedDict):
    command: list[str]
    marker_file: str
    timeout_seconds: float
    scope_to_changed: bool


class SelfHealConfig(TypedDict):
    max_attempts: int
    max_diagnostics: int


class GenerationConfig(TypedDict):
    timeout_seconds: float
    max_output_tokens: int
    task_deadline_seconds: float


class ProviderConfig(TypedDict):
    name: str
    model: str
    api_key_env: str


class ApprovalConfig(TypedDict):
    enabled: bool
    triggers: list[str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool


class ForgeConfig(TypedDict):
    meta: MetaConfig
    budget: BudgetConfig
    edit: EditConfig
    validation: ValidationConfig
    self_heal: SelfHealConfig
    generation: GenerationConfig
    provider: ProviderConfig
    approval: ApprovalConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ForgeConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "budget": {
        "total_tokens": DEFAULT_TOTAL_BUDGET,
        "output_reserve_ratio": DEFAULT_OUTPUT_RESERVE_RATIO,
        "min_output_reserve": 0,
        "high_share": DEFAULT_HIGH_PRIORITY_SHARE,
        "medium_share": DEFAULT_MEDIUM_PRIORITY_SHARE,
        "low_min_remaining": DEFAULT_LOW_MIN_REMAINING,
        "low_file_cap": DEFAULT_LOW_FILE_CAP,
    },
    "edit": {"non_unique_policy": "first_occurrence"},
    "validation": {
        "command": list(DEFAULT_CHECK_COMMAND),
        "marker_file": DEFAULT_CHECK_MARKER_FILE,
        "timeout_seconds": DEFAULT_CHECK_TIMEOUT_SECONDS,
        "scope_to_changed": False,
    },
    "self_heal": {
        "max_attempts": DEFAULT_MAX_HEAL_ATTEMPTS,
        "max_diagnostics": DEFAULT_MAX_HEAL_DIAGNOSTICS,
    },
    "generation": {
        "timeout_seconds": DEFAULT_GENERATION_TIMEOUT_SECONDS,
        "max_output_tokens": DEFAULT_MAX_OUTPUT_TOKENS,
        "task_deadline_seconds": DEFAULT_TASK_DEADLINE_SECONDS,
    },
    "provider": {
        "name": "anthropic",
        "model": "claude-sonnet-4-20250514",
        "api_key_env": "ANTHROPIC_API_KEY",
    },
    "approval": {"enabled": False, "triggers": ["ambiguous_target"]},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": ".forge/logs",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized payload, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Strict validation failed; ``issues`` lists every offending field."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        listing = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{listing or '- <root>: unknown validation failure'}")


class _Invalid(ValueError):
    """One field failed its check; the message becomes the issue text."""


Check = Callable[[object], Any]


def _type_name(value: object) -> str:
    return type(value).__name__


def _integer(minimum: int) -> Check:
    def check(value: object) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid(f"expected integer, got {_type_name(value)}")
        if value < minimum:
            raise _Invalid(f"must be >= {minimum}")
        return value

    return check


def _number(accept: Callable[[float], bool], rule: str) -> Check:
    def check(value: object) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _Invalid(f"expected number, got {_type_name(value)}")
        number = float(value)
        if not math.isfinite(number):
            raise _Invalid("must be finite")
        if not accept(number):
            raise _Invalid(rule)
        return number

    return check


def _boolean(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Invalid(f"expected boolean, got {_type_name(value)}")
    return value


def _text(value: object, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {_type_name(value)}")
    stripped = value.strip()
    if not stripped and not allow_empty:
        raise _Invalid("must not be empty")
    if "\x00" in stripped:
        raise _Invalid("must not contain NUL bytes")
    return stripped


def _choice(*options: str) -> Check:
    def check(value: object) -> str:
        picked = _text(value)
        if picked not in options:
            raise _Invalid(f"invalid value {picked!r}; expected one of: {', '.join(options)}")
        return picked

    return check


def _strings(*, required: bool = False) -> Check:
    def check(value: object) -> list[str]:
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise _Invalid(f"expected array of strings, got {_type_name(value)}")
        items: list[str] = []
        for index, item in enumerate(value):
            try:
                items.append(_text(item))
            except _Invalid as exc:
                raise _Invalid(f"[{index}] {exc}") from None
        if required and not items:
            raise _Invalid("must not be empty")
        return items

    return check


def _triggers(value: object) -> list[str]:
    triggers = _strings()(value)
    unknown = sorted(set(triggers) - set(APPROVAL_TRIGGERS))
    if unknown:
        raise _Invalid(
            f"unknown trigger(s) {', '.join(unknown)}; "
            f"expected any of: {', '.join(APPROVAL_TRIGGERS)}"
        )
    return list(dict.fromkeys(triggers))


def _env_name(value: object) -> str:
    name = _text(value)
    if not _ENV_NAME.fullmatch(name):
        raise _Invalid("must be an env var name (example: ANTHROPIC_API_KEY)")
    return name


def _schema_version(value: object) -> int:
    version = _integer(0)(value)
    if version != ConfigSchemaVersion:
        raise _Invalid(migration_guidance(version))
    return version


_POSITIVE = _number(lambda value: value > 0.0, "must be > 0")
_SHARE = _number(lambda value: 0.0 < value <= 1.0, "must be in (0, 1]")
_RATIO = _number(lambda value: 0.0 <= value < 1.0, "must be >= 0 and < 1.0")

_SCHEMA: Final[dict[str, dict[str, Check]]] = {
    "meta": {"schema_version": _schema_version},
    "budget": {
        "total_tokens": _integer(1),
        "output_reserve_ratio": _RATIO,
        "min_output_reserve": _integer(0),
        "high_share": _SHARE,
        "medium_share": _SHARE,
        "low_min_remaining": _integer(0),
        "low_file_cap": _integer(0),
    },
    "edit": {"non_unique_policy": _choice(*NON_UNIQUE_POLICIES)},
    "validation": {
        "command": _strings(required=True),
        # Empty string runs the check in every project.
        "marker_file": lambda value: _text(value, allow_empty=True),
        "timeout_seconds": _POSITIVE,
        "scope_to_changed": _boolean,
    },
    "self_heal": {"max_attempts": _integer(0), "max_diagnostics": _integer(1)},
    "generation": {
        "timeout_seconds": _POSITIVE,
        "max_output_tokens": _integer(1),
        "task_deadline_seconds": _POSITIVE,
    },
    "provider": {
        "name": _choice(*PROVIDER_NAMES),
        "model": _text,
        "api_key_env": _env_name,
    },
    "approval": {"enabled": _boolean, "triggers": _triggers},
    "observability": {
        "log_level": _choice(*LOG_LEVELS),
        "log_format": _choice(*LOG_FORMATS),
        "log_dir": _text,
        "redact_secrets": _boolean,
    },
}


def default_config() -> ForgeConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "rewrite forge.toml against the current defaults"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade forge-executor"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated."""

    merged: dict[str, Any] = _plain(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _plain(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Check every section against the field table; issues are ordered by path."""

    if not isinstance(config, Mapping):
        issue = ConfigValidationIssue("<root>", f"expected object, got {_type_name(config)}")
        return ConfigValidationResult(config=None, issues=(issue,))

    issues = _key_issues(config, _SCHEMA, prefix="")
    normalized: dict[str, Any] = {}
    for section_name in sorted(_SCHEMA):
        if section_name not in config:
            continue
        section = config[section_name]
        if not isinstance(section, Mapping):
            issues.append(
                ConfigValidationIssue(section_name, f"expected object, got {_type_name(section)}")
            )
            continue
        fields = _SCHEMA[section_name]
        issues.extend(_key_issues(section, fields, prefix=f"{section_name}."))
        values: dict[str, Any] = {}
        for key in sorted(fields.keys() & section.keys()):
            try:
                values[key] = fields[key](section[key])
            except _Invalid as exc:
                issues.append(ConfigValidationIssue(f"{section_name}.{key}", str(exc)))
        normalized[section_name] = values

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys masked, for logs."""

    if not isinstance(config, Mapping):
        return {}
    return {
        str(key): "<redacted>"
        if isinstance(value, str) and _is_secret_key(str(key))
        else _redacted(value)
        for key, value in sorted(config.items(), key=lambda item: str(item[0]))
    }


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


def _key_issues(
    payload: Mapping[Any, object], expected: Mapping[str, object], *, prefix: str
) -> list[ConfigValidationIssue]:
    issues: list[ConfigValidationIssue] = []
    for key in sorted(map(str, payload)):
        if key in expected:
            continue
        message = (
            "embedded secret values are forbidden; use an *_env key with an env var name"
            if _is_secret_key(key)
            else "unknown field"
        )
        issues.append(ConfigValidationIssue(f"{prefix}{key}", message))
    for key in sorted(expected):
        if key not in payload:
            issues.append(ConfigValidationIssue(f"{prefix}{key}", "missing required field"))
    return issues


def _is_secret_key(key: str) -> bool:
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip())
    normalized = re.sub(r"[^a-z0-9]+", "_", snake.lower()).strip("_")
    return not normalized.endswith("_env") and _SECRET_KEY.search(normalized) is not None


def _plain(value: object) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return copy.deepcopy(value)


__all__ = [
    "APPROVAL_TRIGGERS",
    "LOG_FORMATS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ForgeConfig",
    "LOG_LEVELS",
    "NON_UNIQUE_POLICIES",
    "PATH_FIELDS",
    "PROVIDER_NAMES",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
