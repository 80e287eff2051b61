"""
Structured Logging Module
JSON-formatted log records for log aggregation tools
"""

import json
import logging
from typing import Any


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.

    Context such as an email id or a bulk job size can be attached with
    ``logger.info("msg", extra={"extra_fields": {...}})`` and ends up as
    top-level keys. Keys that look like credentials are redacted.
    """

    # Fields that might contain sensitive data - never log their full values
    SENSITIVE_FIELDS = {
        'password', 'pass', 'token', 'secret', 'credential', 'auth'
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as JSON.

        Args:
            record: Python logging.LogRecord to format

        Returns:
            JSON string with structured log data
        """
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update({
                k: self._sanitize_value(k, v)
                for k, v in record.extra_fields.items()
            })

        return json.dumps(log_data, default=str)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        """Return "[REDACTED]" for keys that name a secret"""
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in self.SENSITIVE_FIELDS):
            return "[REDACTED]"
        return value
