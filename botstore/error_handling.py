"""
Error taxonomy and error reporting for botstore.

Every failure the storage layer raises is a ``BotStoreError`` carrying a
severity, free-form ``details`` for reports and the underlying ``cause``.
``handle_error`` logs an error at its severity and hands it to the handlers
registered for its type.
"""

from enum import Enum
from typing import Optional, Dict, Any, Callable, Type, List, Tuple
import logging
from functools import wraps

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Enum representing the severity of errors."""
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3
    CRITICAL = 4


_LOG_LEVELS = {
    ErrorSeverity.DEBUG: logging.DEBUG,
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class BotStoreError(Exception):
    """
    Base exception class for all storage errors.

    Subclasses pick their usual severity through ``default_severity``;
    callers may still override it per instance.
    """

    default_severity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        """
        Args:
            message: Human-readable error message
            severity: Error severity level; ``default_severity`` when omitted
            details: Structured context (table, record key, batch...) kept for reports
            cause: Original exception that caused this error
        """
        self.message = message
        self.severity = severity or self.default_severity
        self.details = details or {}
        self.cause = cause

        full_message = message
        if cause:
            full_message += f" | Caused by: {str(cause)}"
        super().__init__(full_message)

    @property
    def log_level(self) -> int:
        return _LOG_LEVELS[self.severity]

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation for status payloads and migration reports."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.name.lower(),
            "details": dict(self.details),
        }


class ReasonedError(BotStoreError):
    """A BotStoreError whose ``reason`` is one of the class's ``REASONS``."""

    REASONS: Tuple[str, ...] = ()

    def __init__(self, message: str, reason: str, **kwargs):
        if reason not in self.REASONS:
            raise ValueError(f"{type(self).__name__} reason must be one of {self.REASONS}, got {reason!r}")
        details = kwargs.pop("details", None) or {}
        details.setdefault("reason", reason)
        super().__init__(message, details=details, **kwargs)
        self.reason = reason


class ConfigurationError(BotStoreError):
    """Invalid or missing configuration."""


class DatabaseConnectionError(ReasonedError):
    """The relational store cannot be reached."""

    UNREACHABLE = "unreachable"
    BAD_CREDENTIALS = "bad_credentials"
    UNKNOWN_DATABASE = "unknown_database"
    REASONS = (UNREACHABLE, BAD_CREDENTIALS, UNKNOWN_DATABASE)

    def __init__(self, message: str, reason: str = UNREACHABLE, **kwargs):
        super().__init__(message, reason, **kwargs)


class QueryError(BotStoreError):
    """A statement failed in the relational store."""


class IntegrityError(QueryError):
    """Duplicate key or foreign key violation surfaced by the store."""


class ValidationError(BotStoreError):
    """A legacy record failed type or shape checks."""


class TransferError(BotStoreError):
    """A single record or batch failed to persist."""


class ExtractionError(ReasonedError):
    """The legacy snapshot could not be read."""

    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    REASONS = (NOT_FOUND, MALFORMED)


class BackupError(BotStoreError):
    """The legacy snapshot could not be backed up."""


class InitializationTimeoutError(BotStoreError):
    """Backend initialization exceeded its time budget."""


class OperationCancelled(BotStoreError):
    """Raised inside an abandoned attempt once its token is cancelled."""

    default_severity = ErrorSeverity.DEBUG

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(message, **kwargs)


class FallbackModeError(BotStoreError):
    """Relational-only operation requested while running on the legacy store."""

    default_severity = ErrorSeverity.WARNING


class StartupError(BotStoreError):
    """Startup failed and no fallback was permitted."""

    default_severity = ErrorSeverity.CRITICAL


# Error handler registry
_error_handlers: Dict[Type[Exception], List[Callable[[Exception], None]]] = {}


def register_error_handler(
    exception_type: Type[Exception],
    handler: Callable[[Exception], None]
) -> None:
    """
    Call ``handler`` for every handled error that is an instance of ``exception_type``.
    """
    _error_handlers.setdefault(exception_type, []).append(handler)


def unregister_error_handler(
    exception_type: Type[Exception],
    handler: Callable[[Exception], None]
) -> None:
    handlers = _error_handlers.get(exception_type, [])
    if handler in handlers:
        handlers.remove(handler)


def handle_error(error: Exception) -> None:
    """
    Log ``error`` and dispatch it to the matching registered handlers.

    A handler that raises is logged and does not stop the others.
    """
    if isinstance(error, BotStoreError):
        logger.log(error.log_level, error.message, exc_info=error.cause)
    else:
        logger.error(f"Unhandled exception: {str(error)}", exc_info=error)

    for exception_cls, handlers in list(_error_handlers.items()):
        if not isinstance(error, exception_cls):
            continue
        for handler in list(handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Error in error handler: {str(e)}", exc_info=e)


def error_boundary(
    fallback_value: Any = None,
    reraise: bool = False,
    error_type: Type[BotStoreError] = BotStoreError,
    error_message: Optional[str] = None
) -> Callable:
    """
    Decorator that creates an error boundary around a function.

    Args:
        fallback_value: Value to return if an error occurs. Callables are
            invoked with the caught error to build the value.
        reraise: Whether to reraise the error after handling
        error_type: Type of BotStoreError to wrap foreign exceptions in
        error_message: Custom error message (if None, uses the original exception message)
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not isinstance(e, BotStoreError):
                    message = error_message or f"Error in {func.__name__}: {str(e)}"
                    e = error_type(message, cause=e)

                handle_error(e)

                if reraise:
                    raise e
                if callable(fallback_value):
                    return fallback_value(e)
                return fallback_value
        return wrapper
    return decorator
