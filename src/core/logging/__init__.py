"""
Structured logging module.

Provides JSON and console formatters, context propagation through asyncio
tasks (client, component, group, member) and helpers for logging with
structured extra fields.
"""

from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import get_log_file_path, get_logger, setup_logging
from core.logging.utilities import log_exception, log_with_context

__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "clear_log_context",
    "get_log_context",
    "get_log_file_path",
    "get_logger",
    "log_exception",
    "log_with_context",
    "set_log_context",
    "setup_logging",
]
