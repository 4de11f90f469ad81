"""
Logging configuration for the Venue Booking service.
"""

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import get_settings

APP_LOGGER = "venue_booking"

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRIBUTES = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'request_id', 'taskName', 'message',
}


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    enable_json_logging: Optional[bool] = None,
) -> None:
    """
    Configure logging through ``dictConfig``.

    Args:
        log_level: Logging level; defaults to the configured ``log_level``
        log_file: Optional rotating log file path
        enable_json_logging: Emit one JSON object per line
    """
    settings = get_settings()
    log_level = (log_level or settings.log_level).upper()
    log_file = log_file or settings.log_file
    if enable_json_logging is None:
        enable_json_logging = settings.enable_json_logging

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    formatter = "json" if enable_json_logging else "detailed"
    handlers = ["console"]

    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d "
                    "[%(request_id)s] %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "venue_booking.utils.logging_config.JSONFormatter",
            }
        },
        "filters": {
            "request_id": {
                "()": "venue_booking.utils.logging_config.RequestIDFilter"
            },
            "sensitive_data": {
                "()": "venue_booking.utils.logging_config.SensitiveDataFilter"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": sys.stdout,
                "filters": ["request_id", "sensitive_data"]
            }
        },
        "loggers": {
            APP_LOGGER: {"level": log_level, "handlers": handlers, "propagate": False},
            "uvicorn": {"level": "INFO", "handlers": handlers, "propagate": False},
            "uvicorn.access": {"level": "INFO", "handlers": handlers, "propagate": False},
            "sqlalchemy.engine": {"level": "WARNING", "handlers": handlers, "propagate": False},
            "sqlalchemy.pool": {"level": "WARNING", "handlers": handlers, "propagate": False},
            "aiosqlite": {"level": "WARNING", "handlers": handlers, "propagate": False},
            "celery": {"level": "INFO", "handlers": handlers, "propagate": False},
        },
        "root": {
            "level": log_level,
            "handlers": handlers
        }
    }

    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": formatter,
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "filters": ["request_id", "sensitive_data"]
        }
        # Every logger shares the ``handlers`` list, so one append covers them all
        handlers.append("file")

    logging.config.dictConfig(config)


class RequestIDFilter(logging.Filter):
    """Stamp each record with the id of the request being served."""

    def filter(self, record):
        if not getattr(record, 'request_id', None):
            from ..middleware.logging import request_id_var
            record.request_id = request_id_var.get()
        return True


class SensitiveDataFilter(logging.Filter):
    """Mask response tokens and contact details before they reach a handler."""

    SENSITIVE_KEYS = {
        'token', 'response_token', 'secret', 'authorization',
        'cookie', 'email', 'phone', 'deposit_evidence_url',
    }

    TOKEN_PATTERN = re.compile(r'\b[0-9a-fA-F]{32,}\b')
    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = self._sanitize_string(record.msg)

        for key, value in list(record.__dict__.items()):
            if key in _RECORD_ATTRIBUTES:
                continue
            if key.lower() in self.SENSITIVE_KEYS and value is not None:
                setattr(record, key, '***MASKED***')
            elif isinstance(value, (str, dict, list)):
                setattr(record, key, self._sanitize_data(value))

        return True

    def _sanitize_string(self, text: str) -> str:
        text = self.TOKEN_PATTERN.sub('***TOKEN***', text)
        return self.EMAIL_PATTERN.sub('***EMAIL***', text)

    def _sanitize_data(self, data):
        if isinstance(data, dict):
            return {
                key: '***MASKED***' if str(key).lower() in self.SENSITIVE_KEYS
                else self._sanitize_data(value)
                for key, value in data.items()
            }
        elif isinstance(data, str):
            return self._sanitize_string(data)
        elif isinstance(data, list):
            return [self._sanitize_data(item) for item in data]
        return data


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, 'request_id'):
            log_entry["request_id"] = record.request_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def log_business_event(event_type: str, details: Dict[str, Any], actor: Optional[str] = None):
    """Record a business event such as an applied status transition."""
    logger = logging.getLogger(f"{APP_LOGGER}.business")
    logger.info(
        f"Business event: {event_type}",
        extra={
            "event_type": event_type,
            "business_event": True,
            "actor": actor,
            **details
        }
    )


def log_security_event(event_type: str, details: Dict[str, Any], severity: str = "WARNING"):
    """Record a security-relevant event such as a rate-limit hit or expired token use."""
    logger = logging.getLogger(f"{APP_LOGGER}.security")

    log_method = getattr(logger, severity.lower(), logger.warning)
    log_method(
        f"Security event: {event_type}",
        extra={
            "event_type": event_type,
            "security_event": True,
            "severity": severity,
            **details
        }
    )
