"""
Error Taxonomy & Graceful Degradation

Provides the FleetWatch exception hierarchy and structured error logging.
Nothing in the fleet core terminates the process: every failure path
records what happened and continues.
"""

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class FleetWatchException(Exception):
    """Base exception for all FleetWatch errors."""

    def __init__(self, message: str, component: str = "unknown",
                 context: Optional[Dict[str, Any]] = None):
        """Initialize exception with metadata.

        Args:
            message: Error message
            component: Component where error occurred
            context: Additional context data
        """
        self.message = message
        self.component = component
        self.context = context or {}
        self.timestamp = datetime.now()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to structured log format."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "component": self.component,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class ProbeError(FleetWatchException):
    """Raised by a metric source when a node status request fails."""
    pass


class FallbackUnavailableError(FleetWatchException):
    """Raised when the fallback provider cannot serve requests."""
    pass


class PersistenceError(FleetWatchException):
    """Raised when cumulative stats cannot be loaded or saved."""
    pass


class ConfigurationError(FleetWatchException):
    """Raised when configuration is missing or invalid."""
    pass


# ============================================================================
# Error Classification
# ============================================================================

class ErrorCategory(str, Enum):
    """How a failure is handled by the fleet core."""
    TRANSIENT_PROBE = "transient_probe"      # recorded, never escalated
    FALLBACK_UNUSABLE = "fallback_unusable"  # activation refused, event raised
    PERSISTENCE = "persistence"              # logged, in-memory defaults kept
    COMPONENT_FAILURE = "component_failure"  # unexpected; cycle skipped, loop continues


@dataclass
class ErrorContext:
    """Structured representation of an error occurrence."""
    error_type: str
    component: str
    message: str
    category: ErrorCategory
    context_data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    exception: Optional[BaseException] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to structured log format."""
        return {
            "error_type": self.error_type,
            "component": self.component,
            "message": self.message,
            "category": self.category.value,
            "context": self.context_data,
            "timestamp": self.timestamp.isoformat(),
        }


def classify_error(exc: BaseException, component: str,
                   context: Optional[Dict[str, Any]] = None) -> ErrorContext:
    """
    Classify an exception into the fleet error taxonomy.

    Exceptions outside the FleetWatch hierarchy are COMPONENT_FAILURE.

    Args:
        exc: The exception to classify
        component: Name of the component where the error occurred
        context: Optional context data about the error

    Returns:
        ErrorContext with category and metadata
    """
    category_map = {
        PersistenceError: ErrorCategory.PERSISTENCE,
        FallbackUnavailableError: ErrorCategory.FALLBACK_UNUSABLE,
        ProbeError: ErrorCategory.TRANSIENT_PROBE,
    }

    category = ErrorCategory.COMPONENT_FAILURE
    for exc_type, cat in category_map.items():
        if isinstance(exc, exc_type):
            category = cat
            break

    return ErrorContext(
        error_type=exc.__class__.__name__,
        component=component,
        message=str(exc),
        category=category,
        context_data=dict(context or {}),
        exception=exc,
    )


def log_error(error_ctx: ErrorContext, logger_obj: Optional[logging.Logger] = None):
    """
    Log an error with structured format.

    Transient probe failures log at DEBUG, expected degradations at
    WARNING, anything unclassified at ERROR with its traceback.

    Args:
        error_ctx: ErrorContext to log
        logger_obj: Logger instance (defaults to module logger)
    """
    if logger_obj is None:
        logger_obj = logger

    log_data = error_ctx.to_dict()
    # 'message' is reserved on LogRecord
    log_data_extra = {k: v for k, v in log_data.items() if k != "message"}
    text = f"{error_ctx.component}: {error_ctx.message}"

    if error_ctx.category == ErrorCategory.TRANSIENT_PROBE:
        logger_obj.debug(text, extra=log_data_extra)
    elif error_ctx.category == ErrorCategory.COMPONENT_FAILURE:
        logger_obj.error(text, extra=log_data_extra, exc_info=error_ctx.exception)
    else:
        logger_obj.warning(text, extra=log_data_extra)


def handle_component_error(component: str, fallback_value: Any = None) -> Callable:
    """
    Decorator that logs and contains errors raised by an async component step.

    Usage:
        @handle_component_error("stats_store", fallback_value=False)
        async def save(self): ...

    Args:
        component: Name of the component
        fallback_value: Value returned when the wrapped coroutine raises

    Returns:
        Decorator function
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                log_error(classify_error(e, component, {"function": func.__name__}))
                return fallback_value
        return wrapper
    return decorator
