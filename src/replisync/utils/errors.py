"""
Error handling framework for replisync.

This module provides:
- Hierarchical exception classes matching the engine's failure taxonomy
- Error context preservation
- Structured error payloads for host applications
- Bounded retry with exponential backoff and jitter
"""

from typing import Optional, Dict, Any, List, Type, Callable, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager
import asyncio
import random

from .logging import get_logger


logger = get_logger("replisync.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    TRANSPORT = "transport"
    MERGE = "merge"
    PERSISTENCE = "persistence"
    REMOTE = "remote"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    replica_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ReplisyncError(Exception):
    """Base exception for all replisync errors."""

    code: str = "REPLISYNC_ERROR"
    default_message: str = "An error occurred in replisync"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for host-side rendering."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "cause": str(self.cause) if self.cause else None,
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "replica_id": self.context.replica_id,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata,
                },
            }
        }


class TransportError(ReplisyncError):
    """Channel construction or send failure; triggers the fallback ladder."""
    code = "TRANSPORT_ERROR"
    default_message = "Transport failure"
    category = ErrorCategory.TRANSPORT
    severity = ErrorSeverity.WARNING
    is_retryable = True


class MergeError(ReplisyncError):
    """Malformed incoming record or collection."""
    code = "MERGE_ERROR"
    default_message = "Incoming data could not be merged"
    category = ErrorCategory.MERGE
    severity = ErrorSeverity.WARNING


class PersistenceError(ReplisyncError):
    """Local store read/write failure. Fatal for the operation, never retried."""
    code = "PERSISTENCE_ERROR"
    default_message = "Local storage failure"
    category = ErrorCategory.PERSISTENCE
    severity = ErrorSeverity.CRITICAL


class StorageQuotaExceededError(PersistenceError):
    """The local store refused a write because its quota is exhausted."""
    code = "STORAGE_QUOTA_EXCEEDED"
    default_message = "Local storage quota exceeded"

    def get_suggestions(self) -> List[str]:
        return [
            "Drain or clear the offline queue",
            "Increase the storage quota",
        ]


class RemoteError(ReplisyncError):
    """Remote collaborator call failure."""
    code = "REMOTE_ERROR"
    default_message = "Remote collaborator call failed"
    category = ErrorCategory.REMOTE
    is_retryable = True

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, **kwargs):
        self.status = status
        # Client errors other than timeout and rate limiting will fail the same way again
        if status is not None and 400 <= status < 500 and status not in (408, 429):
            self.is_retryable = False
        super().__init__(message, **kwargs)


class ValidationError(ReplisyncError):
    """Malformed caller input, rejected before any I/O."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}",
        ]


class RecordNotFoundError(ValidationError):
    """The caller referenced an identifier that is not in the local state."""
    code = "RECORD_NOT_FOUND"

    def __init__(self, record_id: Any, **kwargs):
        super().__init__("id", record_id, "must reference an existing record", **kwargs)


class ConfigurationError(ReplisyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Ensure all configuration values have the expected types",
        ]


@contextmanager
def error_context(
    component: str,
    operation: str,
    wrap: Type[ReplisyncError] = ReplisyncError,
    **metadata
):
    """
    Annotate replisync errors with context and wrap anything else.

    Args:
        component: Component name
        operation: Operation name
        wrap: Error class used for non-replisync exceptions
        **metadata: Additional context metadata
    """
    try:
        yield
    except ReplisyncError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        raise
    except Exception as e:
        context = ErrorContext(component=component, operation=operation, metadata=metadata)
        wrapped = wrap(f"{operation} failed: {e}", context=context, cause=e)
        logger.error(
            "error_in_context",
            component=component,
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise wrapped from e


class ErrorRecovery:
    """Error recovery strategies."""

    @staticmethod
    def backoff_delay(
        attempt: int,
        base_delay: float,
        max_delay: float,
        jitter: float = 0.0,
    ) -> float:
        """Delay before retry number ``attempt`` (0-based), jitter as a fraction."""
        delay = min(base_delay * (2 ** attempt), max_delay)
        if jitter:
            delay += random.uniform(0, delay * jitter)
        return delay

    @staticmethod
    async def exponential_backoff(
        func: Callable,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.0,
        exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable = asyncio.sleep,
        retry_if: Optional[Callable[[BaseException], bool]] = None,
    ) -> Any:
        """
        Retry with exponential backoff.

        Args:
            func: Function to retry (sync or async, no arguments)
            max_retries: Maximum attempts
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            jitter: Random extra delay as a fraction of the computed delay
            exceptions: Exceptions to retry on
            sleep: Awaitable sleep function
            retry_if: Predicate on a caught exception; False re-raises it at once
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(max_retries):
            try:
                if asyncio.iscoroutinefunction(func):
                    return await func()
                result = func()
                if asyncio.iscoroutine(result):
                    return await result
                return result
            except exceptions as e:
                last_exception = e
                if retry_if is not None and not retry_if(e):
                    logger.warning("permanent_error_not_retried", error=str(e))
                    raise
                if attempt < max_retries - 1:
                    delay = ErrorRecovery.backoff_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "retrying_after_error",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await sleep(delay)
                else:
                    logger.error(
                        "max_retries_exceeded",
                        attempts=max_retries,
                        error=str(e),
                    )

        if last_exception is None:
            raise ValueError("max_retries must be at least 1")
        raise last_exception


__all__ = [
    'ReplisyncError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'TransportError',
    'MergeError',
    'PersistenceError',
    'StorageQuotaExceededError',
    'RemoteError',
    'ValidationError',
    'RecordNotFoundError',
    'ConfigurationError',
    'error_context',
    'ErrorRecovery',
]
