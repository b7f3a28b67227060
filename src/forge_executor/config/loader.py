"""
forge-executor - runtime config loader.

File: src/forge_executor/config/loader.py

Purpose
- Build the effective executor config from four layers: built-in defaults,
  ``forge.toml``, ``FORGE_*`` environment variables and caller overrides.

Functional requirements
- Later layers win: overrides > env > file > defaults.
- The file layer is validated on its own so a broken file is reported
  against the file, not against an override that happens to fix it.
- Env values are coerced to the type of the default they replace; a value
  that cannot be coerced names the variable in the error.
- ``observability.log_dir`` is resolved against the config file directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from forge_executor.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from forge_executor.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX

ConfigPath = tuple[str, ...]

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """The config file is missing or unreadable, or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``config_path=None`` looks for ``forge.toml`` in the working directory and
    tolerates its absence; an explicit path must exist.
    """

    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()
    from_file = _read_toml(path, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), from_file))

    env = os.environ if environ is None else environ
    config = merge_config(config, env_overrides(config, env))
    config = merge_config(config, _expand_dotted(cli_overrides or {}))
    return normalize_paths(assert_valid_config(config), base_dir=path.parent)


def env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overrides taken from ``FORGE_<SECTION>_<KEY>`` variables present in ``environ``."""

    overrides: dict[str, Any] = {}
    for key_path, default in _leaves(config):
        name = env_name_for_path(key_path)
        if name not in environ:
            continue
        coerce = _COERCERS.get(type(default))
        if coerce is None:
            continue
        try:
            value = coerce(environ[name].strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(key_path)}: {exc}") from exc
        _assign(overrides, key_path, value)
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make relative path fields absolute against ``base_dir`` (posix separators)."""

    normalized = merge_config({}, config)
    for key_path in PATH_FIELDS:
        section: Any = normalized
        for part in key_path[:-1]:
            section = section.get(part) if isinstance(section, dict) else None
        if not isinstance(section, dict):
            continue
        raw = section.get(key_path[-1])
        if isinstance(raw, str):
            section[key_path[-1]] = _absolute(raw, base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of the redacted config, for logs and diffs."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: ConfigPath) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except OSError as exc:
        raise ConfigLoadError(f"cannot read config file {path}: {exc}") from exc

    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc


def _leaves(
    config: Mapping[str, object], prefix: ConfigPath = ()
) -> Iterator[tuple[ConfigPath, object]]:
    for key in sorted(config):
        value = config[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _to_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"expected one of {sorted(_TRUTHY | _FALSY)}, got {text!r}")


def _to_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"expected an integer, got {text!r}") from None


def _to_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"expected a number, got {text!r}") from None


# Lists are whitespace separated: FORGE_VALIDATION_COMMAND="npx tsc --noEmit".
_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    str: str,
    list: str.split,
}


def _expand_dotted(overrides: Mapping[str, object]) -> dict[str, Any]:
    expanded: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        key_path = tuple(part for part in key.split(".") if part)
        if not key_path:
            raise ConfigLoadError(f"invalid override key {key!r}")
        if isinstance(value, Mapping):
            value = merge_config({}, value)
        _assign(expanded, key_path, value)
    return expanded


def _assign(target: dict[str, Any], key_path: ConfigPath, value: object) -> None:
    node = target
    for part in key_path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    existing = node.get(key_path[-1])
    if isinstance(existing, dict) and isinstance(value, dict):
        existing.update(value)
    else:
        node[key_path[-1]] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "dump_effective_config",
    "env_name_for_path",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
