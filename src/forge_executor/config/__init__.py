"""
forge-executor config package public API.

File: src/forge_executor/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``forge.toml`` + ``FORGE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from forge_executor.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    env_overrides,
    load_config,
    normalize_paths,
)
from forge_executor.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ForgeConfig,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)
from forge_executor.config.settings import ForgeSettings

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ForgeConfig",
    "ForgeSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_name_for_path",
    "env_overrides",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
