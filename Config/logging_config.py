"""
Structured logging configuration for the fuel ledger.

Every structured logger writes JSON lines to <log_dir>/<name>.log (rotated at
20MB) and, on the console, colored text in dev or JSON in prod/staging.
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from Config.environment import get_environment


# Custom log levels for ledger operations (kept in step with CustomLogger)
LEDGER_LOG_LEVELS = {
    'RECONCILE': 19,
    'ALLOCATION': 21,
    'UNDO': 22,
    'PAYMENT': 23,
    'INSUFFICIENT_QUANTITY': 25,
}

for level_name, level_num in LEDGER_LOG_LEVELS.items():
    logging.addLevelName(level_num, level_name)

# LogRecord attributes that are never copied into "extra"
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'context'}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:
    {"timestamp", "level", "logger", "message", "module", "function", "line",
     "context"?, "extra"?, "exc_info"?}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if hasattr(record, 'context'):
            log_data['context'] = record.context

        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if extra:
            log_data['extra'] = extra

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Level-colored console lines with the context appended as k=v pairs."""

    COLORS = {
        'WARNING': '\x1b[38;5;214m',
        'ERROR': '\x1b[31;21m',
        'CRITICAL': '\x1b[31;1m',
        'RECONCILE': '\x1b[36;21m',
        'ALLOCATION': '\x1b[34;21m',
        'UNDO': '\x1b[33;21m',
        'PAYMENT': '\x1b[32;21m',
        'INSUFFICIENT_QUANTITY': '\x1b[35;21m',
    }
    RESET = '\x1b[0m'

    def __init__(self):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        color = self.COLORS.get(levelname)
        if color:
            record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            formatted = super().format(record)
        finally:
            record.levelname = levelname

        context = getattr(record, 'context', None)
        if context:
            formatted += " [" + " | ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return formatted


class LoggingConfig:
    """Where structured logs go and how they are formatted."""

    MAX_BYTES = 20 * 1024 * 1024
    BACKUP_COUNT = 5

    def __init__(self, log_dir: Optional[str] = None, console_level: Optional[str] = None,
                 use_json: Optional[bool] = None):
        self.log_dir = Path(log_dir or 'logs')
        self.console_level = (console_level or os.getenv('LOG_LEVEL', 'INFO')).upper()
        self.use_json = get_environment() in ('prod', 'production', 'staging') if use_json is None else use_json
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def configure_logger(self, logger_name: str) -> logging.Logger:
        """(Re)attach the console and rotating JSON file handlers to a named logger."""
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.DEBUG)
        logger.handlers.clear()

        console = logging.StreamHandler()
        console.setLevel(logging.getLevelName(self.console_level))
        console.setFormatter(JSONFormatter() if self.use_json else ColoredConsoleFormatter())
        logger.addHandler(console)

        file_handler = RotatingFileHandler(
            self.log_dir / f"{logger_name}.log", maxBytes=self.MAX_BYTES, backupCount=self.BACKUP_COUNT,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

        logger.propagate = False
        return logger


_active_config: Optional[LoggingConfig] = None


def get_logging_config() -> LoggingConfig:
    global _active_config
    if _active_config is None:
        _active_config = LoggingConfig()
    return _active_config


def set_logging_config(config: LoggingConfig) -> None:
    global _active_config
    _active_config = config
