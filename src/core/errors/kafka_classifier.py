"""
Kafka broker error-code classification.

Maps the numeric error codes carried in broker responses onto the client's
exception taxonomy. The code table itself (names, retriable and
invalid-metadata flags) comes from aiokafka so it tracks the broker's
documented protocol.
"""

from typing import Optional

from aiokafka import errors as kafka_errors

from core.errors.exceptions import (
    BrokerResponseError,
    ClientError,
    CommitError,
    MetadataError,
    RebalanceInProgressError,
    wrap_exception,
)

NO_ERROR = 0
OFFSET_OUT_OF_RANGE = 1
UNKNOWN_TOPIC_OR_PARTITION = 3
LEADER_NOT_AVAILABLE = 5
NOT_LEADER_FOR_PARTITION = 6
REQUEST_TIMED_OUT = 7
MESSAGE_SIZE_TOO_LARGE = 10
COORDINATOR_LOAD_IN_PROGRESS = 14
COORDINATOR_NOT_AVAILABLE = 15
NOT_COORDINATOR = 16
ILLEGAL_GENERATION = 22
UNKNOWN_MEMBER_ID = 25
REBALANCE_IN_PROGRESS = 27

# Codes that mean the member must rejoin the group
REJOIN_ERROR_CODES = frozenset(
    {ILLEGAL_GENERATION, UNKNOWN_MEMBER_ID, REBALANCE_IN_PROGRESS}
)

# Codes that mean the group coordinator moved or is not ready
COORDINATOR_ERROR_CODES = frozenset(
    {COORDINATOR_LOAD_IN_PROGRESS, COORDINATOR_NOT_AVAILABLE, NOT_COORDINATOR}
)


def error_name(error_code: int) -> str:
    """Return the aiokafka class name for a broker error code."""
    return kafka_errors.for_code(error_code).__name__


class KafkaErrorClassifier:
    """Turns broker error codes and raw exceptions into typed client errors."""

    @staticmethod
    def is_retriable(error_code: int) -> bool:
        return bool(kafka_errors.for_code(error_code).retriable)

    @staticmethod
    def is_invalid_metadata(error_code: int) -> bool:
        """Whether the code says the client's leader/topic view is stale."""
        return bool(getattr(kafka_errors.for_code(error_code), "invalid_metadata", False))

    @classmethod
    def for_code(
        cls,
        error_code: int,
        context: Optional[dict] = None,
    ) -> ClientError:
        """
        Build the exception for a non-zero broker error code.

        Args:
            error_code: Error code from a broker response
            context: Extra context (topic, partition, api) for logging

        Returns:
            BrokerResponseError, or RebalanceInProgressError for group codes
        """
        err_cls = kafka_errors.for_code(error_code)
        name = err_cls.__name__
        message = f"Broker returned {name} (code {error_code})"

        if error_code in REJOIN_ERROR_CODES:
            return RebalanceInProgressError(
                message, error_code=error_code, error_name=name, context=context
            )

        return BrokerResponseError(
            message,
            error_code=error_code,
            error_name=name,
            retriable=bool(err_cls.retriable),
            invalid_metadata=cls.is_invalid_metadata(error_code),
            context=context,
        )

    @classmethod
    def classify_metadata_error(
        cls, error_code: int, topic: str, context: Optional[dict] = None
    ) -> MetadataError:
        """Build a MetadataError for a topic-level error in a Metadata response."""
        return MetadataError(
            f"Metadata for topic '{topic}' unavailable: {error_name(error_code)}",
            topic=topic,
            cause=cls.for_code(error_code, context),
            context=context,
        )

    @classmethod
    def classify_commit_error(
        cls,
        error: BaseException,
        offsets: Optional[dict] = None,
        context: Optional[dict] = None,
    ) -> CommitError:
        """Wrap any failure raised while committing offsets."""
        if isinstance(error, CommitError):
            return error
        cause: ClientError = wrap_exception(error, context=context)
        return CommitError(
            f"Offset commit failed: {cause.message}",
            offsets=offsets,
            cause=cause,
            context=context,
        )
