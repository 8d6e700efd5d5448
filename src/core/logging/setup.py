"""
Process-wide logging configuration for client applications.

Console output is always on. A rotating JSON file per component and process
can be added, laid out as:

    {log_dir}/{YYYY-MM-DD}/{component}_{YYYYMMDD}[_p{pid}].log

The client library itself never calls setup_logging(); only entry points do.
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

# Chatty below WARNING during reconnect storms
NOISY_LOGGERS = ("asyncio", "aiokafka", "testcontainers")

_TRUE = ("true", "1", "yes")


def get_log_file_path(
    log_dir: Path,
    component: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> Path:
    """
    Path of the log file for a component started today.

    Args:
        log_dir: Base log directory
        component: producer, consumer, ... (default: kafka_client)
        instance_id: Keeps concurrent processes out of each other's file
    """
    now = datetime.now()
    stem = f"{component or 'kafka_client'}_{now:%Y%m%d}"
    if instance_id:
        stem = f"{stem}_{instance_id}"
    return log_dir / f"{now:%Y-%m-%d}" / f"{stem}.log"


def logging_options_from_env() -> Dict[str, Any]:
    """
    setup_logging() keyword arguments from LOG_DIR, LOG_TO_FILE and JSON_LOGS.

    JSON_LOGS switches the file format; the console stays human-readable.
    """
    return {
        "log_dir": Path(os.getenv("LOG_DIR", str(DEFAULT_LOG_DIR))),
        "log_to_file": os.getenv("LOG_TO_FILE", "false").lower() in _TRUE,
        "json_format": os.getenv("JSON_LOGS", "true").lower() in _TRUE,
    }


def _file_handler(
    path: Path, json_format: bool, level: int, max_bytes: int, backup_count: int
) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(filename)s:%(lineno)d] %(message)s")
        )
    return handler


def setup_logging(
    name: str = "kafka_client",
    component: Optional[str] = None,
    client_id: Optional[str] = None,
    log_dir: Optional[Path] = None,
    log_to_file: bool = False,
    json_format: bool = True,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    use_instance_id: bool = True,
) -> logging.Logger:
    """
    Replace the root logger's handlers with a console handler and, optionally,
    a rotating file handler.

    Safe to call again; handlers are replaced, not added.

    Args:
        name: Name of the logger returned
        component: Log context value and log file prefix
        client_id: Log context value
        log_dir: Base directory for log files
        log_to_file: Add the rotating file handler
        json_format: JSON lines in the file instead of plain text
        console_level: Console threshold
        file_level: File threshold
        max_bytes: Rotation size
        backup_count: Rotated files kept
        suppress_noisy: Raise NOISY_LOGGERS to WARNING
        use_instance_id: Add the process id to the file name

    Returns:
        The ``name`` logger
    """
    set_log_context(client_id=client_id, component=component)

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    log_file: Optional[Path] = None
    if log_to_file:
        log_file = get_log_file_path(
            log_dir or DEFAULT_LOG_DIR,
            component=component,
            instance_id=f"p{os.getpid()}" if use_instance_id else None,
        )
        root.addHandler(_file_handler(log_file, json_format, file_level, max_bytes, backup_count))

    if suppress_noisy:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug("Logging initialized", extra={"operation": "setup_logging", "log_file": str(log_file)})
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
