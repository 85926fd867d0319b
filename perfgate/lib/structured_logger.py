"""Structured Logger with JSON Formatting.

Provides structured logging with JSON output for machine-readable logs.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from perfgate.lib.run_context import get_run_id

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

SENSITIVE_KEYS = ('token', 'password', 'webhook', 'smtp_password', 'access_token')

ROOT_LOGGER_NAME = 'perfgate'


def _utc_timestamp() -> str:
  return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _scrub(fields: Dict[str, Any]) -> Dict[str, Any]:
  """Drop sensitive keys from a log payload."""
  return {k: v for k, v in fields.items() if k not in SENSITIVE_KEYS}


class JSONFormatter(logging.Formatter):
  """JSON formatter for structured logging."""

  def format(self, record: logging.LogRecord) -> str:
    """Format log record as JSON.

    Args:
        record: Log record to format

    Returns:
        JSON-formatted log string
    """
    log_data = {
      'timestamp': _utc_timestamp(),
      'level': record.levelname,
      'message': record.getMessage(),
      'module': record.module,
      'function': record.funcName,
      'run_id': get_run_id(),
    }

    extra = {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS}
    log_data.update(_scrub(extra))

    if record.exc_info:
      log_data['exception'] = {
        'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
        'message': str(record.exc_info[1]) if record.exc_info[1] else None,
      }

    return json.dumps(log_data, default=str)


def configure_logging(level: Optional[str] = None) -> logging.Logger:
  """Attach the JSON handler to the package root logger once.

  Args:
      level: Log level name; defaults to the LOG_LEVEL environment variable

  Returns:
      The configured package root logger
  """
  root = logging.getLogger(ROOT_LOGGER_NAME)
  level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
  root.setLevel(getattr(logging, level_name, logging.INFO))

  if not any(isinstance(h.formatter, JSONFormatter) for h in root.handlers):
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

  return root


class StructuredLogger:
  """Structured logger with JSON formatting.

  Usage:
      logger = StructuredLogger(__name__)
      logger.info("baseline.loaded", count=12, path="reports/baselines/performance-baselines.json")
      logger.error("artifact.write_failed", exc_info=True, path=str(path))
  """

  def __init__(self, name: str):
    """Initialize structured logger.

    Args:
        name: Logger name (typically module name)
    """
    configure_logging()
    self.logger = logging.getLogger(name)

  def info(self, message: str, **extra: Any) -> None:
    """Log INFO level message.

    Args:
        message: Log message
        **extra: Additional context (test_name, duration_ms, etc.)
    """
    self.logger.info(message, extra=_scrub(extra))

  def warning(self, message: str, exc_info: bool = False, **extra: Any) -> None:
    """Log WARNING level message.

    Args:
        message: Log message
        exc_info: Include exception traceback
        **extra: Additional context
    """
    self.logger.warning(message, exc_info=exc_info, extra=_scrub(extra))

  def error(self, message: str, exc_info: bool = False, **extra: Any) -> None:
    """Log ERROR level message.

    Args:
        message: Log message
        exc_info: Include exception traceback
        **extra: Additional context
    """
    self.logger.error(message, exc_info=exc_info, extra=_scrub(extra))

  def debug(self, message: str, **extra: Any) -> None:
    """Log DEBUG level message.

    Args:
        message: Log message
        **extra: Additional context
    """
    self.logger.debug(message, extra=_scrub(extra))
