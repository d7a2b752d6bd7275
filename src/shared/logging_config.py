"""
Logging configuration for the Cold Caller data layer.

Provides structured logging with correlation IDs (one per startup or backup
run), centralized configuration and console/JSON output formats.
"""

import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Union
from uuid import uuid4
import traceback
from contextvars import ContextVar
from pathlib import Path

from .config import get_settings


# Context variables for correlation tracking
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)


class CorrelationFilter(logging.Filter):
    """Add correlation IDs and context to log records."""

    def filter(self, record):
        """Add correlation context to log record."""
        record.correlation_id = correlation_id.get() or 'unknown'
        record.run_id = run_id.get() or 'no-run'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra=True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
            'run_id': getattr(record, 'run_id', 'no-run'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in _RESERVED_ATTRS or key in log_entry or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


# Standard LogRecord attributes that never go into the extra payload
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None)).keys()) | {'message', 'asctime'}


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        """Format log record with colors."""
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        correlation_info = f"[{getattr(record, 'correlation_id', 'unknown')[:8]}]"
        return f"{color}{formatted}{self.RESET} {correlation_info}"


class CallerLogger:
    """Logger wrapper that attaches component and operation to every record."""

    def __init__(self, name: str, component: str = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _log(self, log_level: int, message: str, operation: str = None, exc_info: bool = False, **kwargs):
        """Internal logging method with context."""
        extra = {
            'component': self.component,
            'operation': operation or 'unknown',
            **kwargs
        }
        self.logger.log(log_level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, operation: str = None, **kwargs):
        """Log debug message."""
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: str = None, **kwargs):
        """Log info message."""
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: str = None, **kwargs):
        """Log warning message."""
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: str = None, **kwargs):
        """Log error message."""
        self._log(logging.ERROR, message, operation, **kwargs)

    def critical(self, message: str, operation: str = None, **kwargs):
        """Log critical message."""
        self._log(logging.CRITICAL, message, operation, **kwargs)

    def exception(self, message: str, operation: str = None, **kwargs):
        """Log exception with traceback."""
        self._log(logging.ERROR, message, operation or 'exception', exc_info=True, **kwargs)


class LoggingConfig:
    """Centralized logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    COMPONENT_LOGGERS = ['shared', 'contact_store', 'backup_vault']

    THIRD_PARTY_LOGGERS = {
        'sqlalchemy': logging.WARNING,
        'aiosqlite': logging.WARNING,
        'asyncpg': logging.WARNING,
    }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path
            console_output: Enable console output
            correlation_tracking: Enable correlation ID tracking
        """
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        correlation_filter = CorrelationFilter() if correlation_tracking else None

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(cls._build_formatter(format_type))
            if correlation_filter:
                console_handler.addFilter(correlation_filter)
            root_logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())  # Always use JSON for files
            if correlation_filter:
                file_handler.addFilter(correlation_filter)
            root_logger.addHandler(file_handler)

        cls._configure_component_loggers()

        logger = CallerLogger(__name__, 'logging_config')
        logger.info(
            "Logging system initialized",
            operation="setup_logging",
            level=level,
            format_type=format_type,
            log_file=log_file,
        )

    @classmethod
    def _build_formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)

    @classmethod
    def _configure_component_loggers(cls):
        """Configure component-specific loggers."""
        for component in cls.COMPONENT_LOGGERS:
            logging.getLogger(component).setLevel(logging.INFO)

        for logger_name, level in cls.THIRD_PARTY_LOGGERS.items():
            logging.getLogger(logger_name).setLevel(level)

    @classmethod
    def get_config_dict(
        cls,
        level: str = 'INFO',
        format_type: str = 'json',
        log_file: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Get logging configuration as dictionary for dictConfig.

        Args:
            level: Logging level
            format_type: Format type
            log_file: Optional log file path

        Returns:
            Logging configuration dictionary
        """
        config = {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {
                'correlation': {'()': CorrelationFilter}
            },
            'formatters': {
                'json': {'()': JSONFormatter, 'include_extra': True},
                'colored': {'()': ColoredFormatter, 'format': cls.DEFAULT_FORMAT},
                'standard': {'format': cls.DEFAULT_FORMAT},
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'level': level,
                    'formatter': format_type,
                    'filters': ['correlation'],
                    'stream': 'ext://sys.stdout'
                }
            },
            'loggers': {
                **{name: {'level': 'INFO'} for name in cls.COMPONENT_LOGGERS},
                **{name: {'level': logging.getLevelName(lvl)} for name, lvl in cls.THIRD_PARTY_LOGGERS.items()},
            },
            'root': {
                'level': level,
                'handlers': ['console']
            }
        }

        if log_file:
            config['handlers']['file'] = {
                'class': 'logging.FileHandler',
                'level': level,
                'formatter': 'json',
                'filters': ['correlation'],
                'filename': log_file
            }
            config['root']['handlers'].append('file')

        return config


class CorrelationContext:
    """Context manager for correlation tracking."""

    def __init__(self, correlation_id_value: str = None, run_id_value: str = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.run_id_value = run_id_value
        self.correlation_token = None
        self.run_token = None

    def __enter__(self):
        self.correlation_token = correlation_id.set(self.correlation_id_value)
        if self.run_id_value:
            self.run_token = run_id.set(self.run_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.correlation_token:
            correlation_id.reset(self.correlation_token)
        if self.run_token:
            run_id.reset(self.run_token)


def get_logger(name: str, component: str = None) -> CallerLogger:
    """Get a component logger instance."""
    return CallerLogger(name, component)


def set_correlation_id(correlation_id_value: str):
    """Set correlation ID for current context."""
    correlation_id.set(correlation_id_value)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id.get()


def get_run_id() -> Optional[str]:
    """Get current backup run ID."""
    return run_id.get()


def initialize_logging(settings=None):
    """Initialize logging from the monitoring settings."""
    settings = settings or get_settings()
    monitoring = settings.monitoring
    production = settings.is_production()

    log_file = monitoring.log_file
    if log_file is None and production:
        log_file = 'logs/coldcaller.log'

    LoggingConfig.setup_logging(
        level=monitoring.log_level.value,
        format_type=monitoring.log_format or ('json' if production else 'colored'),
        log_file=log_file,
    )


# Auto-initialize if not in test environment
if not os.getenv('TESTING'):
    initialize_logging()
