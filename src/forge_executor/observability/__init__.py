"""Structured logging and correlation primitives."""

from forge_executor.observability.logging import (
    JsonLineFormatter,
    LoggingConfig,
    LoggingHandle,
    LogRedactor,
    TextLineFormatter,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    reset_correlation_fields,
    set_correlation_fields,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
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
