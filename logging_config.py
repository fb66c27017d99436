"""Centralized logging configuration.

This module provides:
- JSONFormatter for structured logging (one JSON object per line)
- PlainFormatter for local debugging
- setup_logging() to install either on the root logger
"""

import json
import logging
import re
import sys


TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service_name: str = None):
        super().__init__()
        self.service_name = service_name or "idam-simulator"

    def format(self, record: logging.LogRecord) -> str:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = TAG_PATTERN.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "service": self.service_name,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(
    service_name: str = None,
    json_logs: bool = False,
    level: str = "INFO",
) -> logging.Logger:
    """Configure the root logger with a single stderr handler.

    Args:
        service_name: Name stamped on structured log entries.
        json_logs: Emit JSON lines instead of plain text.
        level: Root log level name.

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(JSONFormatter(service_name) if json_logs else PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Request lines are already logged by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"[STARTUP] Logging configured ({'json' if json_logs else 'plain'}, {level})")

    return root_logger
