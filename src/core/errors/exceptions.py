"""
Common exception types and error classification for the streaming client.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for client errors
- Error classification utilities
"""

import asyncio
from enum import Enum
from typing import Any, List, Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., connection reset, request timeout, stale metadata)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., retry budget exhausted, message too large)
        CIRCUIT_OPEN: Circuit breaker is open, rejecting fast without attempting
        CANCELLED: Caller asked for the operation to stop
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ClientError(Exception):
    """
    Base exception for all client errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should trigger a retry."""
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.CIRCUIT_OPEN,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transient Errors
# =============================================================================


class TransientError(ClientError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class TransportError(TransientError):
    """Network failure talking to a broker (reset, refused, EOF)."""

    def __init__(
        self,
        message: str,
        node_id: Optional[int] = None,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.node_id = node_id


class RequestTimeoutError(TransportError):
    """No response from the broker within the request timeout."""

    pass


class MetadataError(TransientError):
    """Cluster metadata is missing or stale; a refresh is needed."""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.topic = topic
        if isinstance(cause, BrokerResponseError) and not cause.is_retryable:
            self.category = ErrorCategory.PERMANENT


class BufferTimeoutError(TransientError):
    """Producer waited too long for buffer space (backpressure)."""

    pass


# =============================================================================
# Permanent Errors (Don't Retry)
# =============================================================================


class PermanentError(ClientError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ConnectError(PermanentError):
    """Bootstrap or broker unreachable after exhausting reconnect attempts."""

    pass


class ConfigurationError(PermanentError):
    """Invalid configuration."""

    pass


class DeliveryError(PermanentError):
    """
    A producer batch could not be delivered.

    Raised once the retry budget is exhausted or the broker rejected the
    batch with a non-retriable error. Carries the records so the caller can
    requeue or log them.
    """

    def __init__(
        self,
        message: str,
        topic_partition: Any = None,
        records: Optional[List[Any]] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.topic_partition = topic_partition
        self.records = records or []
        self.attempts = attempts


class IllegalStateError(PermanentError):
    """Operation called in the wrong lifecycle state."""

    pass


# =============================================================================
# Broker Errors
# =============================================================================


class BrokerResponseError(ClientError):
    """
    Error code returned by a broker.

    Category depends on the error code: retriable codes are transient,
    everything else is permanent.
    """

    def __init__(
        self,
        message: str,
        error_code: int,
        error_name: str = "",
        retriable: bool = False,
        invalid_metadata: bool = False,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.error_code = error_code
        self.error_name = error_name
        self.invalid_metadata = invalid_metadata
        self.category = (
            ErrorCategory.TRANSIENT if retriable else ErrorCategory.PERMANENT
        )


class CommitError(ClientError):
    """
    Offset commit failed.

    Surfaced to the caller, who decides whether to retry or accept the
    reprocessing risk. The category follows the underlying cause.
    """

    def __init__(
        self,
        message: str,
        offsets: Optional[dict] = None,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.offsets = offsets or {}
        if isinstance(cause, ClientError):
            self.category = cause.category


class RebalanceInProgressError(TransientError):
    """Group is rebalancing or the member is stale; the member must rejoin."""

    def __init__(
        self,
        message: str,
        error_code: int = 27,
        error_name: str = "RebalanceInProgressError",
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.error_code = error_code
        self.error_name = error_name


# =============================================================================
# Caller-initiated and Circuit Breaker Errors
# =============================================================================


class Cancelled(ClientError):
    """Operation cancelled by the caller. Not a failure of the system."""

    category = ErrorCategory.CANCELLED


class CircuitOpenError(ClientError):
    """Circuit breaker is open, rejecting requests."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(
        self,
        circuit_name: str,
        retry_after: float,
        cause: Optional[BaseException] = None,
    ):
        message = f"Circuit '{circuit_name}' is open"
        super().__init__(message, cause, {"circuit_name": circuit_name})
        self.circuit_name = circuit_name
        self.retry_after = retry_after


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, ClientError):
        return exc.category

    if isinstance(exc, asyncio.CancelledError):
        return ErrorCategory.CANCELLED

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    # Broker errors decoded by aiokafka carry their own retriable flag
    retriable = getattr(exc, "retriable", None)
    if retriable is not None and hasattr(exc, "errno"):
        return ErrorCategory.TRANSIENT if retriable else ErrorCategory.PERMANENT

    if isinstance(exc, (ConnectionError, EOFError, OSError)):
        return ErrorCategory.TRANSIENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connection refused",
        "connection reset",
        "connection aborted",
        "no route to host",
        "network unreachable",
        "name resolution",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timed out" in exc_str:
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (ValueError, TypeError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def is_retryable_error(exc: BaseException) -> bool:
    """Check whether an exception should be retried with backoff."""
    return classify_exception(exc) in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.CIRCUIT_OPEN,
        ErrorCategory.UNKNOWN,
    )


def is_transient_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient failure."""
    return classify_exception(exc) == ErrorCategory.TRANSIENT


def wrap_exception(
    exc: BaseException,
    default_class: type = ClientError,
    context: Optional[dict] = None,
) -> ClientError:
    """
    Wrap a generic exception in appropriate ClientError subclass.

    Args:
        exc: Exception to wrap
        default_class: Class to use if can't classify
        context: Additional context to include

    Returns:
        Appropriate ClientError subclass instance
    """
    if isinstance(exc, ClientError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)

    if category == ErrorCategory.CANCELLED:
        return Cancelled("Operation cancelled", cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return RequestTimeoutError(
                str(exc) or "Request timed out", cause=exc, context=context
            )
        return TransportError(str(exc) or type(exc).__name__, cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    # Default wrapper
    return default_class(str(exc), cause=exc, context=context)
