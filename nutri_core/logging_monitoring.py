"""
Logging Setup for Nutri Core

Structured logging for the dashboard API:
- JSON formatter for machine-readable log files
- Console handler for local development
- Rotating file handlers for application and error logs

Author: jetgause
Created: 2026-10-18
"""

import sys
import json
import logging
import logging.handlers
import traceback
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union


CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5


@dataclass
class LogEntry:
    """Structured log entry."""
    timestamp: str
    level: str
    message: str
    logger_name: str
    module: str
    function: str
    line_number: int
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


class JSONFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.utcnow().isoformat(),
            level=record.levelname,
            message=record.getMessage(),
            logger_name=record.name,
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            extra=dict(getattr(record, 'extra', {}) or {})
        )

        if record.exc_info:
            log_entry.extra['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return log_entry.to_json()


def setup_logging(level: Union[str, int] = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Log level name or number
        log_dir: Directory for JSON log files; console only when None

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, '_nutri_handler', False):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console_handler._nutri_handler = True
    root.addHandler(console_handler)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)

        json_handler = logging.handlers.RotatingFileHandler(
            path / "app.json.log",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT
        )
        json_handler.setFormatter(JSONFormatter())
        json_handler._nutri_handler = True
        root.addHandler(json_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            path / "errors.log",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(JSONFormatter())
        error_handler._nutri_handler = True
        root.addHandler(error_handler)

    return root
