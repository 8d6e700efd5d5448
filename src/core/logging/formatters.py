"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from core.logging.context import get_log_context


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Errors and retries
        "error_category",
        "error_message",
        "error_type",
        "error_code",
        "attempt",
        "retry_count",
        "delay_ms",
        "circuit_name",
        "circuit_state",
        # Operation tracking
        "operation",
        "duration_ms",
        "elapsed_seconds",
        # Cluster
        "node_id",
        "host",
        "port",
        "correlation_id",
        "api_key",
        "broker_count",
        "topic_count",
        # Records
        "topic",
        "partition",
        "offset",
        "position",
        "record_count",
        "batch_bytes",
        "batch_sequence",
        "leader",
        "policy",
        # Group
        "generation",
        "protocol",
        "reason",
        "partitions",
        "member_count",
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Inject context variables
        for key, value in get_log_context().items():
            if value:
                log_entry[key] = value

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Includes context when available.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]

        if ctx["component"]:
            parts.append(f"[{ctx['component']}]")
        if ctx["group_id"]:
            parts.append(f"[{ctx['group_id']}]")

        prefix = " - ".join(parts)

        topic = getattr(record, "topic", None)
        partition = getattr(record, "partition", None)
        if topic is not None and partition is not None:
            return f"{prefix} - [{topic}-{partition}] {record.getMessage()}"

        message = f"{prefix} - {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
