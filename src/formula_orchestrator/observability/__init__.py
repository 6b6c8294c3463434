"""Public observability primitives: structured logging and correlation context."""

from formula_orchestrator.observability.logging import (
    JsonLineFormatter,
    LoggingConfig,
    LoggingHandle,
    LogRedactor,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
