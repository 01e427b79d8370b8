"""
Structured logger for the fuel ledger.

Records carry a "context" dict built from the task-local context
(set_context / log_context), the logger's default context and the per-call
extra, later sources winning.

    logger = get_component_logger('reconcile')
    with log_context(reconcile_run=3):
        logger.reconcile('Projection in sync')
"""

import asyncio
import functools
import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

from Config.logging_config import LoggingConfig, get_logging_config, set_logging_config, LEDGER_LOG_LEVELS


_log_context: ContextVar[Dict[str, Any]] = ContextVar('log_context', default={})


class StructuredLogger(logging.LoggerAdapter):

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        context = {**_log_context.get(), **(self.extra or {}), **kwargs.pop('extra', {})}
        if context:
            kwargs['extra'] = {'context': context}
        return msg, kwargs

    def allocation(self, msg: str, *args, **kwargs) -> None:
        self.log(LEDGER_LOG_LEVELS['ALLOCATION'], msg, *args, **kwargs)

    def undo(self, msg: str, *args, **kwargs) -> None:
        self.log(LEDGER_LOG_LEVELS['UNDO'], msg, *args, **kwargs)

    def payment(self, msg: str, *args, **kwargs) -> None:
        self.log(LEDGER_LOG_LEVELS['PAYMENT'], msg, *args, **kwargs)

    def reconcile(self, msg: str, *args, **kwargs) -> None:
        self.log(LEDGER_LOG_LEVELS['RECONCILE'], msg, *args, **kwargs)

    def insufficient_quantity(self, msg: str, *args, **kwargs) -> None:
        self.log(LEDGER_LOG_LEVELS['INSUFFICIENT_QUANTITY'], msg, *args, **kwargs)


_loggers: Dict[str, StructuredLogger] = {}


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> StructuredLogger:
    """Cached per (name, default context); the first call attaches the handlers."""
    cache_key = f"{name}:{sorted((context or {}).items())}"
    if cache_key not in _loggers:
        base_logger = get_logging_config().configure_logger(name)
        _loggers[cache_key] = StructuredLogger(base_logger, context or {})
    return _loggers[cache_key]


def get_component_logger(component: str, **extra_context) -> StructuredLogger:
    return get_logger(component, context={'component': component, **extra_context})


def set_context(**context) -> None:
    _log_context.set({**_log_context.get(), **context})


def clear_context() -> None:
    _log_context.set({})


def get_context() -> Dict[str, Any]:
    return _log_context.get().copy()


@contextmanager
def log_context(**context):
    """Extend the logging context for the duration of the block."""
    token = _log_context.set({**_log_context.get(), **context})
    try:
        yield
    finally:
        _log_context.reset(token)


def log_performance(logger_name: str, level: str = 'INFO') -> Callable:
    """Log start, completion and duration_ms of the wrapped call; failures log at ERROR and re-raise."""
    def decorator(func: Callable) -> Callable:
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

        def _finish(logger, start_time, failed):
            duration = {'duration_ms': round((time.perf_counter() - start_time) * 1000, 2)}
            if failed:
                logger.error(f"{func.__name__} failed", exc_info=True, extra=duration)
            else:
                logger.log(log_level, f"{func.__name__} completed", extra=duration)

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                logger = get_logger(logger_name)
                logger.log(log_level, f"Calling {func.__name__}")
                start_time = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    _finish(logger, start_time, failed=True)
                    raise
                _finish(logger, start_time, failed=False)
                return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            logger = get_logger(logger_name)
            logger.log(log_level, f"Calling {func.__name__}")
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                _finish(logger, start_time, failed=True)
                raise
            _finish(logger, start_time, failed=False)
            return result
        return sync_wrapper

    return decorator


def setup_structured_logging(log_dir: Optional[str] = None, console_level: str = 'INFO',
                             use_json: Optional[bool] = None) -> LoggingConfig:
    """Install a new logging config; previously handed-out loggers are dropped from the cache."""
    config = LoggingConfig(log_dir=log_dir, console_level=console_level, use_json=use_json)
    set_logging_config(config)
    _loggers.clear()
    return config
