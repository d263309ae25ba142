"""
Fly8 Sync - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import os
import sys
import json
import traceback
import uuid
from datetime import datetime
from typing import Any, Dict, Optional
from contextvars import ContextVar


# Context variables for session tracing
session_id_var: ContextVar[str] = ContextVar('session_id', default='')
user_id_var: ContextVar[str] = ContextVar('user_id', default='')


def get_session_id() -> str:
    """Get current session ID from context"""
    return session_id_var.get() or ''


def set_session_id(session_id: str) -> None:
    """Set session ID in context"""
    session_id_var.set(session_id)


def get_user_id() -> str:
    """Get current user ID from context"""
    return user_id_var.get() or ''


def set_user_id(user_id: str) -> None:
    """Set user ID in context"""
    user_id_var.set(user_id)


def generate_session_id() -> str:
    """Generate a short unique session ID"""
    return str(uuid.uuid4())[:8]


_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'session_id', 'user_id',
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        session_id = get_session_id()
        if session_id:
            log_data["session_id"] = session_id

        user_id = get_user_id()
        if user_id:
            log_data["user_id"] = user_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that includes context variables (session_id, user_id)
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        record.session_id = get_session_id() or '-'
        record.user_id = get_user_id() or '-'

        return super().format(record)


class SyncLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_request(self, method: str, path: str, status_code: int,
                    duration_ms: float, **kwargs) -> None:
        """Log HTTP request details"""
        self.debug(
            f"HTTP {method} {path} - {status_code} ({duration_ms:.2f}ms)",
            extra={
                "event_type": "http_request",
                "http_method": method,
                "http_path": path,
                "http_status": status_code,
                "duration_ms": duration_ms,
                **kwargs
            }
        )

    def log_channel_event(self, event: str, detail: Optional[str] = None,
                          level: int = logging.INFO, **kwargs) -> None:
        """Log event channel lifecycle (connect, disconnect, errors)"""
        self.log(
            level,
            f"Channel {event}" + (f": {detail}" if detail else ""),
            extra={
                "event_type": "channel",
                "channel_event": event,
                **kwargs
            }
        )

    def log_cache_event(self, event: str, key: str, **kwargs) -> None:
        """Log cache transitions (invalidate, fetch, gc)"""
        self.debug(
            f"Cache {event} {key}",
            extra={
                "event_type": "cache",
                "cache_event": event,
                "query_key": key,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )


def setup_logging(level: Optional[str] = None, environment: Optional[str] = None) -> SyncLogger:
    """Setup logging configuration based on environment"""
    level = level or os.environ.get("FLY8_LOG_LEVEL", "INFO")
    environment = environment or os.environ.get("FLY8_ENVIRONMENT", "development")

    logging.setLoggerClass(SyncLogger)

    logger = logging.getLogger("fly8sync")
    logger.__class__ = SyncLogger  # Ensure it's our custom class
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    if environment == "production":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ContextualFormatter(
            "%(asctime)s | %(levelname)-8s | [%(user_id)s] | %(name)s:%(lineno)d | %(message)s"
        ))
    logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> SyncLogger:
    """Get a child logger of the fly8sync logger"""
    return logging.getLogger(f"fly8sync.{name}")


# Create logger instance
logger: SyncLogger = setup_logging()


__all__ = [
    'logger',
    'get_logger',
    'setup_logging',
    'get_session_id',
    'set_session_id',
    'get_user_id',
    'set_user_id',
    'generate_session_id',
    'SyncLogger',
]
