"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- ClientError hierarchy for typed exceptions
- Classification utilities for error handling
- Broker error-code mapping (kafka_classifier)
"""

from core.errors.exceptions import (
    # Enums
    ErrorCategory,
    # Base classes
    ClientError,
    TransientError,
    PermanentError,
    CircuitOpenError,
    # Transient errors
    TransportError,
    RequestTimeoutError,
    MetadataError,
    BufferTimeoutError,
    RebalanceInProgressError,
    # Permanent errors
    ConnectError,
    ConfigurationError,
    DeliveryError,
    IllegalStateError,
    # Broker / surfaced errors
    BrokerResponseError,
    CommitError,
    Cancelled,
    # Classification utilities
    is_transient_error,
    is_retryable_error,
    classify_exception,
    wrap_exception,
)
from core.errors.kafka_classifier import KafkaErrorClassifier

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "ClientError",
    "TransientError",
    "PermanentError",
    "CircuitOpenError",
    # Transient errors
    "TransportError",
    "RequestTimeoutError",
    "MetadataError",
    "BufferTimeoutError",
    "RebalanceInProgressError",
    # Permanent errors
    "ConnectError",
    "ConfigurationError",
    "DeliveryError",
    "IllegalStateError",
    # Broker / surfaced errors
    "BrokerResponseError",
    "CommitError",
    "Cancelled",
    # Classification utilities
    "is_transient_error",
    "is_retryable_error",
    "classify_exception",
    "wrap_exception",
    "KafkaErrorClassifier",
]
