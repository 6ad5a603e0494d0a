"""Logging configuration for s3-unzip.

The library modules only ever call ``logging.getLogger(__name__)``; hosts
(such as the ``unzip-to-s3`` CLI) call :func:`setup_logging` once to pick the
level, the format and an optional rotating log file.

Environment variables:
    S3UNZIP_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (falls back to LOG_LEVEL)
    S3UNZIP_LOG_FORMAT: json, human, simple
    S3UNZIP_LOG_FILE: path of a JSON log file
"""

import logging
import logging.handlers
import json
import os
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Union
from pathlib import Path

_RESERVED_RECORD_FIELDS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info', 'taskName',
])


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def __init__(self, include_context: bool = True):
        super().__init__()
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if self.include_context:
            log_data['module'] = record.module
            log_data['function'] = record.funcName
            log_data['line'] = record.lineno
            log_data['thread'] = record.threadName

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Fields passed through ``extra=`` (entry_path, key, bucket, ...)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Format log records in human-readable format with colors (optional)."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_colors: bool = False, include_context: bool = False):
        if include_context:
            fmt = (
                '[%(levelname)s] %(asctime)s - %(name)s - %(threadName)s - '
                '%(funcName)s:%(lineno)d - %(message)s'
            )
        else:
            fmt = '[%(levelname)s] %(asctime)s - %(name)s - %(message)s'

        super().__init__(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        if self.use_colors:
            color = self.COLORS.get(record.levelname, '')
            reset = self.COLORS['RESET']
            return f"{color}{formatted}{reset}"

        return formatted


def get_log_level_from_env() -> int:
    """
    Get log level from environment variable.

    Environment variables checked (in order):
    1. S3UNZIP_LOG_LEVEL
    2. LOG_LEVEL

    Returns:
        Logging level (default: INFO)
    """
    level_name = os.environ.get('S3UNZIP_LOG_LEVEL') or os.environ.get('LOG_LEVEL', 'INFO')
    level_name = level_name.upper()

    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'WARN': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    return level_map.get(level_name, logging.INFO)


def get_log_format_from_env() -> str:
    """Return S3UNZIP_LOG_FORMAT ('json', 'human', 'simple'), default 'human'."""
    return os.environ.get('S3UNZIP_LOG_FORMAT', 'human').lower()


def setup_logging(
    level: Optional[int] = None,
    format_type: Optional[str] = None,
    log_file: Optional[Path] = None,
    use_colors: bool = False,
    include_context: bool = False
) -> None:
    """
    Configure root logging for an s3-unzip host process.

    Console output goes to stderr so that stdout stays free for the
    upload results printed by the CLI.

    Args:
        level: Logging level (defaults to S3UNZIP_LOG_LEVEL or INFO)
        format_type: Format type ('json', 'human', 'simple')
        log_file: Optional path to log file
        use_colors: Use ANSI colors in console output
        include_context: Include thread/function context in logs

    Examples:
        >>> setup_logging()
        >>> setup_logging(level=logging.DEBUG, format_type='json')
    """
    if level is None:
        level = get_log_level_from_env()

    if format_type is None:
        format_type = get_log_format_from_env()

    if log_file is None:
        log_file_env = os.environ.get('S3UNZIP_LOG_FILE')
        if log_file_env:
            log_file = Path(log_file_env)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        handler.close()
        root_logger.removeHandler(handler)

    if format_type == 'json':
        formatter: logging.Formatter = JSONFormatter(include_context=include_context)
    elif format_type == 'simple':
        formatter = logging.Formatter('%(levelname)s: %(message)s')
    else:  # human
        formatter = HumanReadableFormatter(
            use_colors=use_colors, include_context=include_context
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # 10MB max, 5 backups
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5
        )
        file_handler.setLevel(level)
        # Always use JSON for file logs
        file_handler.setFormatter(JSONFormatter(include_context=True))
        root_logger.addHandler(file_handler)

    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(max(level, logging.INFO))
    logging.getLogger('urllib3').setLevel(max(level, logging.INFO))


def get_logger(
    name: str, extra: Optional[Dict[str, Any]] = None
) -> Union[logging.Logger, logging.LoggerAdapter]:
    """
    Get a logger that stamps every record with the given extra fields.

    The pipeline uses this to tag a run's records with its bucket; the JSON
    formatter emits the extras as top-level fields.

    Example:
        >>> logger = get_logger(__name__, extra={'bucket': 'uploads'})
        >>> logger.info("Starting run")
    """
    logger = logging.getLogger(name)

    if extra:
        return logging.LoggerAdapter(logger, extra)

    return logger


def log_exception(
    logger: Union[logging.Logger, logging.LoggerAdapter],
    message: str,
    exc: BaseException,
) -> None:
    """Log an exception with its type and message attached as extra fields."""
    logger.error(
        "%s: %s",
        message,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={
            'exception_type': type(exc).__name__,
            'exception_message': str(exc)
        }
    )
