"""
OverSkill Pipeline - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import sys
import json
import traceback
import uuid
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict
from contextvars import ContextVar

from overskill.core.config import settings


# Context variables for deployment tracing
app_id_var: ContextVar[str] = ContextVar('app_id', default='')
deployment_id_var: ContextVar[str] = ContextVar('deployment_id', default='')


def get_app_id() -> str:
    """Get current app ID from context"""
    return app_id_var.get() or ''


def set_app_id(app_id: str) -> None:
    """Set app ID in context"""
    app_id_var.set(app_id)


def get_deployment_id() -> str:
    """Get current deployment ID from context"""
    return deployment_id_var.get() or ''


def set_deployment_id(deployment_id: str) -> None:
    """Set deployment ID in context"""
    deployment_id_var.set(deployment_id)


def generate_deployment_id() -> str:
    """Generate a short unique deployment ID"""
    return str(uuid.uuid4())[:8]


_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'app_id', 'deployment_id',
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    One object per line so log shippers can parse it directly
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

        app_id = get_app_id()
        if app_id:
            log_data["app_id"] = app_id

        deployment_id = get_deployment_id()
        if deployment_id:
            log_data["deployment_id"] = deployment_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Extra fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Readable formatter that includes the app and deployment ids
    Used for development
    """

    def format(self, record: logging.LogRecord) -> str:
        record.app_id = get_app_id() or '-'
        record.deployment_id = get_deployment_id() or '-'

        return super().format(record)


class OverskillLogger(logging.Logger):
    """
    Custom logger with convenience methods for pipeline events
    """

    def log_build_event(self, event: str, mode: str, attempt: int = 0,
                        duration_ms: float = 0, **kwargs) -> None:
        """Log build lifecycle events"""
        self.info(
            f"Build {event} ({mode})" +
            (f" attempt {attempt}" if attempt else "") +
            (f" - {duration_ms:.0f}ms" if duration_ms else ""),
            extra={
                "event_type": "build",
                "build_event": event,
                "build_mode": mode,
                "attempt": attempt,
                "duration_ms": duration_ms,
                **kwargs
            }
        )

    def log_deploy_event(self, event: str, target: str, success: bool = True,
                         url: str = None, reason: str = None, **kwargs) -> None:
        """Log deployment lifecycle events"""
        level = logging.INFO if success else logging.WARNING
        self.log(
            level,
            f"Deploy {event} -> {target}" +
            (f" - {url}" if url else "") +
            (f" - {reason}" if reason else ""),
            extra={
                "event_type": "deploy",
                "deploy_event": event,
                "deploy_target": target,
                "deploy_success": success,
                "deploy_url": url,
                "failure_reason": reason,
                **kwargs
            }
        )

    def log_fix_event(self, error_type: str, file_path: str, success: bool,
                      description: str = None, **kwargs) -> None:
        """Log auto-fix attempts"""
        level = logging.INFO if success else logging.DEBUG
        self.log(
            level,
            f"Fix {error_type} in {file_path}: {'applied' if success else 'skipped'}" +
            (f" - {description}" if description else ""),
            extra={
                "event_type": "fix",
                "error_type": error_type,
                "file_path": file_path,
                "fix_success": success,
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
                "error_class": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )

    def log_performance(self, operation: str, duration_ms: float,
                        threshold_ms: float = 1000, **kwargs) -> None:
        """Log performance metrics, warn if over threshold"""
        level = logging.WARNING if duration_ms > threshold_ms else logging.DEBUG
        self.log(
            level,
            f"Performance: {operation} took {duration_ms:.2f}ms" +
            (f" (threshold: {threshold_ms}ms)" if duration_ms > threshold_ms else ""),
            extra={
                "event_type": "performance",
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
                "exceeded_threshold": duration_ms > threshold_ms,
                **kwargs
            }
        )


def setup_logging() -> OverskillLogger:
    """Setup logging configuration based on environment"""

    logging.setLoggerClass(OverskillLogger)

    logger = logging.getLogger("overskill")
    logger.__class__ = OverskillLogger  # Ensure it's our custom class
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logger.handlers.clear()

    if settings.is_production:
        # Production: JSON formatted logs for log aggregation
        json_formatter = JSONFormatter()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(json_formatter)
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(json_formatter)
            logger.addHandler(file_handler)

    else:
        # Development: human-readable format
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | "
            "[%(app_id)s] [%(deployment_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | %(message)s"

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(ContextualFormatter(simple_format))
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(ContextualFormatter(detailed_format))
            logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": settings.is_production
        }
    )

    return logger


# Create logger instance
logger: OverskillLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_app_id',
    'set_app_id',
    'get_deployment_id',
    'set_deployment_id',
    'generate_deployment_id',
    'OverskillLogger',
]
