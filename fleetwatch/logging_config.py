"""
FleetWatch Structured Logging Module
JSON-based structured logging for fleet observability
"""

import logging
import os
import sys
from typing import Optional

import structlog
from pythonjsonlogger import jsonlogger

# ============================================================================
# STRUCTURED LOGGING CONFIGURATION
# ============================================================================


def setup_json_logging(
    log_level: str = "INFO",
    service_name: str = "fleetwatch",
    environment: Optional[str] = None,
):
    """
    Setup JSON structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Name of the service
        environment: Environment name (default: FLEETWATCH_ENV or "development")
    """
    environment = environment or os.getenv("FLEETWATCH_ENV", "development")
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    json_handler = logging.StreamHandler(sys.stdout)
    json_formatter = jsonlogger.JsonFormatter(
        fmt='%(asctime)s %(levelname)s %(name)s %(message)s',
        timestamp=True
    )
    json_handler.setFormatter(json_formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(json_handler)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """
    Get a structured logger instance

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound structlog logger instance
    """
    return structlog.get_logger(name)


def log_error(
    logger: structlog.BoundLogger,
    error: Exception,
    context: str,
    **extra
):
    """
    Log error with full context and stack trace

    Args:
        logger: Structlog logger instance
        error: Exception instance
        context: Context description
        **extra: Additional context fields
    """
    logger.error(
        context,
        error_type=type(error).__name__,
        error_message=str(error),
        exc_info=True,
        **extra
    )


def log_circuit_breaker_event(
    logger: structlog.BoundLogger,
    event: str,
    breaker_name: str,
    state: str,
    reason: Optional[str] = None,
    **extra
):
    """
    Log fallback breaker state changes

    Args:
        logger: Structlog logger instance
        event: Event type (activated, deactivated, refused, check_due)
        breaker_name: Name of the breaker
        state: Current state
        reason: Reason for state change
        **extra: Additional context fields
    """
    logger.warning(
        "circuit_breaker_event",
        breaker_event=event,
        breaker=breaker_name,
        state=state,
        reason=reason,
        **extra
    )


def log_health_transition(
    logger: structlog.BoundLogger,
    node_id: str,
    previous_state: str,
    state: str,
    **extra
):
    """
    Log a node health classification change

    Args:
        logger: Structlog logger instance
        node_id: Node whose classification changed
        previous_state: Classification before the probe
        state: Classification after the probe
        **extra: Additional context fields
    """
    level = "warning" if state == "offline" else "info"
    getattr(logger, level)(
        "node_health_transition",
        node_id=node_id,
        previous_state=previous_state,
        state=state,
        **extra
    )
