"""Logging configuration for ingresskeeper using structlog."""

import logging
import os
import sys
from typing import Any

import structlog


def setup_logging(verbose: bool = False) -> None:
    """Setup structured logging configuration.

    Args:
        verbose: If True, enables DEBUG logging regardless of LOG_LEVEL env var
    """
    if verbose:
        log_level = "DEBUG"
    else:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    numeric_level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )
    # basicConfig is a no-op once handlers exist, so apply the level explicitly
    logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _get_renderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger(__name__)
    logger.info("Logging configured", log_level=log_level, verbose=verbose)


def _get_renderer() -> Any:
    """Get the appropriate log renderer based on environment."""
    log_format = os.getenv("LOG_FORMAT", "console").lower()

    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=True,
        exception_formatter=structlog.dev.plain_traceback,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name, typically __name__

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_function_entry(logger: structlog.stdlib.BoundLogger, func_name: str, **kwargs: Any) -> None:
    """Log function entry with parameters."""
    logger.debug("Function entry", function=func_name, **kwargs)


def log_function_exit(logger: structlog.stdlib.BoundLogger, func_name: str, **kwargs: Any) -> None:
    """Log function exit with return values."""
    logger.debug("Function exit", function=func_name, **kwargs)


def log_k8s_operation(logger: structlog.stdlib.BoundLogger, operation: str, namespace: str, **kwargs: Any) -> None:
    """Log Kubernetes operation details.

    Args:
        logger: The logger instance
        operation: Type of K8s operation
        namespace: Namespace the operation targets
        **kwargs: Additional operation details
    """
    logger.debug("Kubernetes operation", operation=operation, namespace=namespace, **kwargs)


def log_watch_event(logger: structlog.stdlib.BoundLogger, kind: str, event_type: str, **kwargs: Any) -> None:
    """Log an event delivered by a watch stream.

    Args:
        logger: The logger instance
        kind: Resource kind being watched
        event_type: ADDED, MODIFIED, DELETED, ERROR or BOOKMARK
        **kwargs: Event details
    """
    logger.debug("Watch event", kind=kind, event_type=event_type, **kwargs)


def log_reconcile_event(logger: structlog.stdlib.BoundLogger, event_type: str, **kwargs: Any) -> None:
    """Log a reconciliation outcome (resolve, publish, lifecycle request)."""
    logger.info("Reconcile event", event_type=event_type, **kwargs)


def log_process_event(logger: structlog.stdlib.BoundLogger, event_type: str, **kwargs: Any) -> None:
    """Log a routing process lifecycle transition."""
    logger.info("Process event", event_type=event_type, **kwargs)
