"""Helpers for structured log calls."""

import logging
from typing import Any

MAX_ERROR_MESSAGE = 500

# ClientError.context keys copied onto the record when the caller did not set them
_CONTEXT_KEYS = ("topic", "partition", "node_id", "group_id", "offset")


def log_with_context(logger: logging.Logger, level: int, msg: str, **fields: Any) -> None:
    """
    Log ``msg`` with ``fields`` as record attributes.

    Example:
        log_with_context(
            logger, logging.INFO, "Batch delivered",
            topic=tp.topic, partition=tp.partition, record_count=len(batch),
        )
    """
    logger.log(level, msg, extra=fields)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **fields: Any,
) -> None:
    """
    Log a failure with its type, category and (truncated) message.

    Client errors contribute ``error_category``, a broker ``error_code`` when
    they carry one, and the cluster coordinates found in their context.
    Explicit ``fields`` win over anything derived from the exception.

    Args:
        logger: Logger instance
        exc: The failure
        msg: What was being attempted
        level: Log level (default: ERROR)
        include_traceback: Attach exc_info
        **fields: Extra record attributes
    """
    category = getattr(exc, "category", None)
    if category is not None:
        fields.setdefault("error_category", getattr(category, "value", str(category)))
    error_code = getattr(exc, "error_code", None)
    if error_code is not None:
        fields.setdefault("error_code", error_code)
    context = getattr(exc, "context", None)
    if isinstance(context, dict):
        for key in _CONTEXT_KEYS:
            if key in context:
                fields.setdefault(key, context[key])

    text = str(exc)
    if len(text) > MAX_ERROR_MESSAGE:
        text = text[:MAX_ERROR_MESSAGE] + "..."
    fields["error_message"] = text
    fields.setdefault("error_type", type(exc).__name__)

    logger.log(level, msg, exc_info=exc if include_traceback else None, extra=fields)
