"""
forge-executor - structured logging.

File: src/forge_executor/observability/logging.py

Purpose
- JSON-lines logging on stdlib ``logging`` with secret redaction and
  contextvar correlation fields (``run_id``, ``task_id``, ``attempt_id``).
- Route ``structlog`` loggers used by the planes through the same handlers.

Functional requirements
- ``setup_logging(observability_config, run_id=...)`` writes
  ``<log_dir>/<run_id>/executor.jsonl`` and optionally stderr, where
  ``log_format = "text"`` switches stderr to one readable line per record.
- ``correlation_scope(task_id=...)`` binds fields for every record in scope,
  including records emitted from awaited coroutines.
- Redaction covers sensitive keys, bearer tokens and provider API keys.
"""

from __future__ import annotations

import contextvars
import json
import logging
import math
import re
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
LOG_FORMATS: Final[frozenset[str]] = frozenset({"json", "text"})

_ROOT_LOGGER: Final[str] = "forge_executor"
_CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "task_id", "attempt_id")

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_SECRET_KEY = re.compile(
    r"secret|password|passphrase|api_?key|authorization|credential|private_key|access_token"
    # Prompts and file bodies may quote source code that embeds secrets.
    r"|prompt_text|raw_response|file_content",
    re.IGNORECASE,
)
_SECRET_TEXT: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
            r"(\s*[:=]\s*)[^\s,;]+"
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}\b"), REDACTED),
    (re.compile(r"\bsk-[A-Za-z0-9]{12,}\b"), REDACTED),
)

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "forge_executor_correlation", default=()
)

_active_lock = threading.Lock()
_active: LoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path(".forge/logs")
    logger_name: str = _ROOT_LOGGER
    level: int | str = "INFO"
    log_filename: str = "executor.jsonl"
    log_to_stderr: bool = True
    stderr_format: str = "json"
    redactor: LogRedactor | None = None


@dataclass(slots=True)
class LoggingHandle:
    """What one ``setup_structured_logging`` call installed, so it can be undone."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    handlers: tuple[logging.Handler, ...]
    closed: bool = False

    def flush(self) -> None:
        for handler in self.handlers:
            handler.flush()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for handler in self.handlers:
            self.logger.removeHandler(handler)
            handler.flush()
            handler.close()


class JsonLineFormatter(logging.Formatter):
    """One key-sorted JSON object per record; extras go under ``fields``."""

    def __init__(self, *, redactor: LogRedactor, base_context: Mapping[str, str]) -> None:
        super().__init__()
        self._redactor = redactor
        self._base_context = dict(base_context)

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean_text(record.getMessage()),
            **self.correlation_for(record),
        }
        extras = _extras(record)
        if extras:
            event["fields"] = self._redactor(extras)
        if record.exc_info is not None:
            event["exception"] = self._clean_text(self.formatException(record.exc_info))
        return _dumps(event)

    def correlation_for(self, record: logging.LogRecord) -> dict[str, str]:
        fields = {**self._base_context, **get_correlation_context()}
        for key in _CORRELATION_KEYS:
            value = getattr(record, key, None)
            if isinstance(value, str) and value.strip():
                fields[key] = value.strip()
        return fields

    def _clean_text(self, text: str) -> str:
        cleaned = self._redactor(text)
        return cleaned if isinstance(cleaned, str) else _dumps(cleaned)


class TextLineFormatter(JsonLineFormatter):
    """``<time> <LEVEL> <logger> <message> key=value ...`` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            _utc_stamp(record.created),
            f"{record.levelname:<7}",
            record.name,
            self._clean_text(record.getMessage()),
        ]
        pairs = {**self.correlation_for(record), **_as_dict(self._redactor(_extras(record)))}
        parts.extend(
            f"{key}={value if isinstance(value, str) else _dumps(value)}"
            for key, value in sorted(pairs.items())
        )
        line = " ".join(parts)
        if record.exc_info is not None:
            line += "\n" + self._clean_text(self.formatException(record.exc_info))
        return line


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = _ROOT_LOGGER,
) -> logging.Logger:
    """Apply an ``[observability]`` section and return the configured stdlib logger."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", ".forge/logs")
    log_format = section.get("log_format", "json")
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else ".forge/logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            stderr_format=log_format if isinstance(log_format, str) else "json",
            redactor=None if section.get("redact_secrets", True) else _keep,
        )
    )
    configure_structlog()
    return handle.logger


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Install the run's file handler (and stderr); replaces any active setup."""

    shutdown_logging()

    run_id = _non_blank(config.run_id, "run_id")
    logger_name = _non_blank(config.logger_name, "logger_name")
    filename = _non_blank(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not contain path separators")
    if config.stderr_format not in LOG_FORMATS:
        raise ValueError(f"stderr_format must be one of {sorted(LOG_FORMATS)}")
    level = _level(config.level)

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    redactor = config.redactor if config.redactor is not None else default_log_redactor
    context = {"run_id": run_id}
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(JsonLineFormatter(redactor=redactor, base_context=context))
    handlers: list[logging.Handler] = [file_handler]
    if config.log_to_stderr:
        console = logging.StreamHandler()
        formatter_type = TextLineFormatter if config.stderr_format == "text" else JsonLineFormatter
        console.setFormatter(formatter_type(redactor=redactor, base_context=context))
        handlers.append(console)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)

    handle = LoggingHandle(
        logger=logger, run_id=run_id, log_path=log_path, handlers=tuple(handlers)
    )
    global _active
    with _active_lock:
        _active = handle
    return handle


def configure_structlog() -> None:
    """Send ``structlog.get_logger(...)`` events through stdlib ``logging``.

    The event name becomes the record message and keyword fields become record
    extras, so the formatters render them like any other ``extra``.
    """

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            _suffix_reserved_keys,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def shutdown_logging() -> None:
    global _active
    with _active_lock:
        handle, _active = _active, None
    if handle is not None:
        handle.close()


def get_active_logging_handle() -> LoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


def set_correlation_fields(
    **fields: str | None,
) -> contextvars.Token[tuple[tuple[str, str], ...]]:
    """Bind (or with ``None`` unbind) correlation fields; returns a reset token."""

    current = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            current.pop(key, None)
        else:
            current[_non_blank(key, "correlation key")] = _non_blank(value, "correlation value")
    return _correlation.set(tuple(current.items()))


def reset_correlation_fields(token: contextvars.Token[tuple[tuple[str, str], ...]]) -> None:
    _correlation.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    if isinstance(value, str):
        for pattern, replacement in _SECRET_TEXT:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _is_secret_key(key: str) -> bool:
    # ``*_env`` fields name an environment variable, never hold its value.
    return not key.lower().endswith("_env") and _SECRET_KEY.search(key) is not None


def _suffix_reserved_keys(
    logger: object, method_name: str, event_dict: dict[str, object]
) -> dict[str, object]:
    # LogRecord refuses extras that shadow its own attributes.
    for key in [key for key in event_dict if key in _RECORD_ATTRS]:
        event_dict[f"{key}_"] = event_dict.pop(key)
    return event_dict


def _extras(record: logging.LogRecord) -> dict[str, JSONValue]:
    return {
        key: _jsonable(value)
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and key not in _CORRELATION_KEYS and not key.startswith("_")
    }


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=_dumps)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")
    return repr(value)


def _as_dict(value: JSONValue) -> dict[str, JSONValue]:
    return value if isinstance(value, dict) else {}


def _dumps(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _utc_stamp(created: float) -> str:
    moment = datetime.fromtimestamp(created, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _keep(value: JSONValue) -> JSONValue:
    return value


def _non_blank(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must not be empty")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


__all__ = [
    "LOG_FORMATS",
    "REDACTED",
    "JSONValue",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "TextLineFormatter",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
