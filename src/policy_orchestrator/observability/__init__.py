"""Public observability primitives: structured logging and decision logs."""

from policy_orchestrator.observability.logging import (
    LOG_FILENAME,
    ROOT_LOGGER_NAME,
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    get_decision_logger,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LOG_FILENAME",
    "LoggingConfig",
    "ROOT_LOGGER_NAME",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "get_active_logging_handle",
    "get_correlation_context",
    "get_decision_logger",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
