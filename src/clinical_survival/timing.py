"""Wall-clock timing for pipeline stages and functions.

Durations are written through log_performance, so they land in the
performance log as well as the main log.

Example:
    >>> with Timer(logger, "Stage: validation"):
    ...     bootstrap_validate(canonical, model, context)
"""
import time
import functools
import logging
from typing import Callable, Optional

from clinical_survival.logging_config import log_performance


class Timer:
    """Context manager that logs how long a block took.

    A failing block is logged at ERROR with its elapsed time and the
    exception is re-raised unchanged.

    Attributes:
        duration: Elapsed seconds, set when the block exits
    """

    def __init__(self, logger: logging.Logger, description: str):
        self.logger = logger
        self.description = description
        self.duration = None
        self._start = None

    def __enter__(self):
        self._start = time.perf_counter()
        self.logger.info(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self._start
        if exc_type is not None:
            self.logger.error(f"{self.description} failed after {self.duration:.2f}s: {exc_val}")
            return False
        log_performance(
            self.logger,
            f"Completed: {self.description}",
            duration_sec=round(self.duration, 2),
        )
        return False


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator timing every call of the wrapped function with a Timer.

    Args:
        logger: Logger to use; defaults to the logger of the function's module

    Example:
        >>> @log_execution_time()
        ... def load_raw_records(config, input_path=None):
        ...     ...
        # "Completed: load_raw_records | duration_sec=1.84"
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with Timer(logger or logging.getLogger(func.__module__), func.__name__):
                return func(*args, **kwargs)
        return wrapper
    return decorator
