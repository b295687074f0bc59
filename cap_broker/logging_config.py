"""Logging configuration and setup."""

import contextvars
import json
import logging
import logging.handlers
from datetime import datetime, timezone
from typing import Optional

from cap_broker.config import Config, config as default_config


# Correlation id of the request (or background job) currently being served
correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id', default=None
)

_EXTRA_FIELDS = (
    'instance_id', 'binding_id', 'operation_id', 'operation', 'status', 'duration_ms',
    'originating_identity'
)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


class CorrelationIdFilter(logging.Filter):
    """Stamp every record with the current correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, 'correlation_id', None):
            record.correlation_id = correlation_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        correlation_id = getattr(record, 'correlation_id', None)
        if correlation_id:
            log_entry['correlation_id'] = correlation_id

        # Add extra fields if present
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(config: Optional[Config] = None):
    """Set up logging configuration."""
    config = config or default_config

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.logging.level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    correlation_filter = CorrelationIdFilter()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(JSONFormatter())
    console_handler.addFilter(correlation_filter)
    root_logger.addHandler(console_handler)

    # File handler if configured
    if config.logging.file_path:
        file_handler = logging.handlers.RotatingFileHandler(
            config.logging.file_path,
            maxBytes=config.logging.max_file_size,
            backupCount=config.logging.backup_count
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(correlation_filter)
        root_logger.addHandler(file_handler)

    # Set specific logger levels
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
