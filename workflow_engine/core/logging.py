"""Logging configuration for the workflow engine."""

import logging
import sys
import json
import threading
import traceback
from datetime import datetime
from typing import Optional, Dict, Any
from pathlib import Path


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if getattr(record, "extra_fields", None):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Adds execution context (execution id, node id, request id) to log records.

    Context is kept per thread: the dispatcher, the workers and the request
    handlers each carry their own.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _context(self) -> Dict[str, Any]:
        context = getattr(self._local, "context", None)
        if context is None:
            context = {}
            self._local.context = context
        return context

    def set_context(self, **kwargs):
        """Set context fields for logging on the current thread."""
        self._context().update(kwargs)

    def clear_context(self):
        """Clear all context fields on the current thread."""
        self._context().clear()

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to log record."""
        extra_fields = dict(self._context())
        extra_fields.update(getattr(record, "extra_fields", None) or {})
        record.extra_fields = extra_fields
        return True


_context_filter = WorkflowContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the workflow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Custom log format string
        structured: Whether to use structured JSON logging
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        if log_format is None:
            log_format = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] - %(message)s"

        formatter = logging.Formatter(
            fmt=log_format,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

    logging.getLogger("workflow_engine.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)
    logging.getLogger("workflow_engine.api").setLevel(logging.INFO)
    logging.getLogger("workflow_engine.actions").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for subsequent log messages on this thread."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    """Clear logging context fields on this thread."""
    _context_filter.clear_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Specialized logger for retry and recovery operations."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"workflow_engine.recovery.{component_name}")
        self.component_name = component_name

    def log_recovery_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        """Log a recovery attempt."""
        log_with_context(
            self.logger, logging.WARNING,
            f"Recovery attempt {attempt}/{max_attempts} for {operation}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            error_message=str(error),
            attempt=attempt,
            max_attempts=max_attempts
        )

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        """Log failed recovery."""
        log_with_context(
            self.logger, logging.ERROR,
            f"Failed to recover from {operation} after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            error_type=type(final_error).__name__,
            error_message=str(final_error),
            attempts_used=attempts_used,
            recovery_status="failed"
        )
