"""taskweave logging helpers.

Provides get_logger, configure_logging and track_performance. Everything
delegates to Python's standard logging library; modules keep using
``logging.getLogger(__name__)`` directly.
"""

import inspect
import functools
import json
import logging
import time
from typing import Any, Callable, Optional

_ROOT_LOGGER = "taskweave"
_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(settings: Any = None) -> logging.Logger:
    """Attach a single handler to the ``taskweave`` logger.

    Uses ``settings.log_level`` / ``settings.log_format`` when given, else
    INFO text. Calling it again replaces the previous handler.
    """
    level = getattr(settings, "log_level", "INFO")
    fmt = getattr(settings, "log_format", "text")

    logger = logging.getLogger(_ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_taskweave", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._taskweave = True  # type: ignore[attr-defined]
    handler.setFormatter(JsonFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level, logging.INFO))
    return logger


def track_performance(func: Optional[Callable] = None, *, operation: str = ""):
    """Decorator that logs execution time of a function at DEBUG."""
    def decorator(fn: Callable) -> Callable:
        op = operation or fn.__qualname__

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, time.perf_counter() - start
                )

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await fn(*args, **kwargs)
            finally:
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, time.perf_counter() - start
                )

        if inspect.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
